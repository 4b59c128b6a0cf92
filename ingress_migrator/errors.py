"""
Migration errors
Per-resource failures are collected and reported at the end of a run,
run-scoped failures (RunAbortedError) stop the batch.
"""

from typing import List, Optional


class MigrationError(Exception):
    """Base class for all migration failures"""


class AnnotationParseError(MigrationError):
    """A legacy annotation value could not be parsed"""


class InvalidIngressError(MigrationError):
    """Source Ingress uses a construct that cannot be expressed in the target dialect"""


class SecretNotFoundError(MigrationError):
    """Secret was not found in any of the searched namespaces"""

    def __init__(self, name: str, namespaces: List[str]):
        self.name = name
        self.namespaces = namespaces
        super().__init__(f"secret '{name}' not found in namespaces {', '.join(namespaces)}")


class TCPPortsError(MigrationError):
    """TCP port data of a resource could not be written"""


class ResourceMigrationError(MigrationError):
    """Wraps a per-resource failure with the identity of the source resource"""

    def __init__(self, namespace: str, name: str, cause: Exception):
        self.namespace = namespace
        self.name = name
        self.cause = cause
        super().__init__(f"{namespace}/{name}: {cause}")


class RunAbortedError(MigrationError):
    """Cross-resource consistency violation, the remaining batch must not run"""


class ALBPortCollisionError(RunAbortedError):
    def __init__(self, alb_id: str, port: str):
        self.alb_id = alb_id
        self.port = port
        super().__init__(
            "Collision in the tcp-ports annotations of different Ingresses for the same ALB. "
            f"ALB {alb_id}, Port {port}"
        )


class MigrationModeMismatchError(RunAbortedError):
    def __init__(self, persisted: str, requested: str):
        self.persisted = persisted
        self.requested = requested
        super().__init__(
            f"migration mode should not be changed from '{persisted}' to '{requested}' during a single run"
        )


class RandomSourceError(RunAbortedError):
    """Random string generation failed"""


class MigrationFailedError(MigrationError):
    """Aggregated per-resource errors of a finished run"""

    def __init__(self, errors: List[Exception], message: Optional[str] = None):
        self.errors = errors
        super().__init__(message or f"error occurred while processing ingress resources: {len(errors)} error(s)")
