"""
Migration report
YAML dump of the recorded cluster objects and the final status printout
"""

import logging
import os
import sys
from typing import Dict, List

import yaml
from kubernetes import client

from .model import MigratedResource

logger = logging.getLogger(__name__)

RESOURCE_SPLITTING_QUESTION = "Why do I have more resources than I had before?"
RESOURCE_SPLITTING_ANSWER = (
    "With the IBM Cloud Kubernetes Service Ingress controller, you could indicate specific services for the "
    "annotation to apply to. For example the following annotation configures the timeout only for the 'myservice' "
    "service, but has no effect on other services: "
    "ingress.bluemix.net/proxy-connect-timeout: \"serviceName=myservice timeout=5s\".\n"
    "However, with the Kubernetes Ingress Controller, every annotation in an Ingress resource is applied to all "
    "service paths in that resource.\n"
    "The migration tool creates one new Ingress resource for each service path that was specified in the original "
    "resource, so that you can modify the annotations for each service path. Also, a special Ingress resource with "
    "the '-server' suffix is generated that contains annotations that affect the NGINX configuration on the "
    "server level."
)

WARNINGS_QUESTION = "How do I proceed with migration warnings?"
WARNINGS_ANSWER = (
    "The migration tool attempts to convert the old Ingress resource annotations and ConfigMap parameters into new "
    "ones that result in the same behavior. When the migration tool cannot convert an annotation or parameter "
    "automatically, or when the resulting behavior is slightly different, the tool generates a warning for the "
    "corresponding resource. The warning message contains the description of the problem and pointers to the IBM "
    "Cloud Kubernetes Service or NGINX documentation."
)

FAQ = (
    (RESOURCE_SPLITTING_QUESTION, RESOURCE_SPLITTING_ANSWER),
    (WARNINGS_QUESTION, WARNINGS_ANSWER),
)


def dump_path(output_dir: str, kind: str, name: str, namespace: str) -> str:
    return os.path.join(output_dir, namespace, f"{kind}-{name}.yaml")


def dump_resources(output_dir: str, recorded: Dict[str, Dict[str, Dict[str, object]]]) -> List[str]:
    """Write every recorded object as YAML, returns the written paths"""
    api_client = client.ApiClient()
    written = []
    for kind, namespaces in recorded.items():
        for namespace, objects in namespaces.items():
            os.makedirs(os.path.join(output_dir, namespace), exist_ok=True)
            for name, obj in objects.items():
                path = dump_path(output_dir, kind, name, namespace)
                with open(path, 'w') as f:
                    yaml.safe_dump(api_client.sanitize_for_serialization(obj), f, default_flow_style=False)
                written.append(path)
    logger.info(f"Dumped {len(written)} resource(s) to {output_dir}")
    return written


def print_status(output_dir: str, context: str, mode: str, resources: List[MigratedResource], out=None):
    out = out or sys.stdout

    def emit(line=''):
        print(line, file=out)

    emit("Migration finished!")
    emit(f"Find the migration logs and the migrated resources in YAML format under the {output_dir} directory.")
    emit()

    emit("Frequently Asked Questions")
    emit()
    for question, answer in FAQ:
        emit(f"Q: {question}")
        emit(f"A: {answer}")
        emit()

    emit("Migration Details")
    emit()
    emit(f"KubeConfig context: {context}")
    emit(f"Migration mode:     {mode}")
    emit()

    emit("Migrated Resources")
    emit()
    for resource in resources:
        emit(f"Resource name:      {resource.name}")
        emit(f"Resource namespace: {resource.namespace}")
        emit(f"Resource kind:      {resource.kind}")
        emit("Migrated to:")
        if resource.migrated_as:
            for target in resource.migrated_as:
                emit(f"- {target}")
        else:
            emit("No generated resources.")
        emit("Resource migration warnings:")
        if resource.warnings:
            for warning in resource.warnings:
                emit(f"- {warning}")
        else:
            emit("No warnings.")
        emit()
