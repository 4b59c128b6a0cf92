"""
Migration data model
Resolved per-resource configuration, render-ready units and persisted ledger entries
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union


ServicePort = Union[int, str]


@dataclass(frozen=True)
class Scope:
    """Target of an annotation entry: one named backend service, or all of them"""
    service: Optional[str] = None

    @property
    def is_all(self) -> bool:
        return self.service is None

    @classmethod
    def named(cls, service: str) -> 'Scope':
        return cls(service)

    def __str__(self):
        return self.service if self.service is not None else '<all services>'


ALL_SERVICES = Scope()


@dataclass
class LocationAnnotations:
    rewrite: str = ''
    redirect_to_https: bool = False
    location_snippet: List[str] = field(default_factory=list)
    client_max_body_size: str = ''
    proxy_buffer_size: str = ''
    proxy_buffering: str = ''
    proxy_buffers: str = ''
    proxy_read_timeout: str = ''
    proxy_connect_timeout: str = ''
    proxy_ssl_secret: str = ''
    proxy_ssl_verify_depth: str = ''
    proxy_ssl_name: str = ''
    proxy_ssl_verify: str = ''
    proxy_next_upstream: str = ''
    proxy_next_upstream_timeout: str = ''
    proxy_next_upstream_tries: str = ''
    set_sticky_cookie: bool = False
    sticky_cookie_name: str = ''
    sticky_cookie_expire: str = ''
    sticky_cookie_path: str = ''
    appid_auth_url: str = ''
    appid_sign_in_url: str = ''
    use_regex: bool = False


@dataclass
class ServerAnnotations:
    server_snippet: List[str] = field(default_factory=list)
    set_mutual_auth: bool = False
    mutual_auth_secret_name: str = ''


@dataclass
class Location:
    path: str
    service_name: str
    service_port: ServicePort
    annotations: LocationAnnotations
    path_type: Optional[str] = None


@dataclass
class Server:
    host_name: str
    annotations: ServerAnnotations
    locations: List[Location] = field(default_factory=list)


@dataclass
class IngressConfig:
    """One source Ingress resolved into hosts and per-service locations"""
    name: str
    namespace: str
    ingress_class: str
    tls: list = field(default_factory=list)
    servers: List[Server] = field(default_factory=list)


@dataclass
class TLSConfig:
    secret: str
    host_names: List[str] = field(default_factory=list)


@dataclass
class SingleIngressConfig:
    """Render-ready unit, either one backend location or the host-level server"""
    name: str
    namespace: str
    ingress_class: str
    is_server: bool = False
    host_names: List[str] = field(default_factory=list)
    tls_configs: List[TLSConfig] = field(default_factory=list)
    path: str = ''
    path_type: Optional[str] = None
    service_name: str = ''
    service_port: ServicePort = ''
    location_annotations: LocationAnnotations = field(default_factory=LocationAnnotations)
    server_annotations: ServerAnnotations = field(default_factory=ServerAnnotations)


@dataclass(frozen=True)
class TCPPortConfig:
    service_name: str
    namespace: str
    service_port: str

    def target(self) -> str:
        return f"{self.namespace}/{self.service_name}:{self.service_port}"


@dataclass
class ALBConfigData:
    tcp_ports: Dict[str, TCPPortConfig] = field(default_factory=dict)


# ALB id ("" when no ALB is selected) -> accumulated configuration
ALBSpecificData = Dict[str, ALBConfigData]


@dataclass
class MigratedResource:
    kind: str
    name: str
    namespace: str
    migrated_as: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            'kind': self.kind,
            'name': self.name,
            'namespace': self.namespace,
            'migratedAs': list(self.migrated_as),
            'warnings': list(self.warnings),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> 'MigratedResource':
        return cls(
            kind=data.get('kind', ''),
            name=data.get('name', ''),
            namespace=data.get('namespace', ''),
            migrated_as=list(data.get('migratedAs') or []),
            warnings=list(data.get('warnings') or []),
        )
