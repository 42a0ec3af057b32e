"""Validation of values passed to docker and kubectl.

Commands are never run through a shell, but image names, tags, paths and
Kubernetes names still come from overrides and branch names, so they are
checked before use.
"""

from __future__ import annotations

import re

DOCKER_IMAGE_PATTERN = re.compile(r"^[a-zA-Z0-9._/:-]+$")
DOCKER_TAG_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+$")
FILE_PATH_PATTERN = re.compile(r"^[a-zA-Z0-9._/-]+$")
K8S_NAME_PATTERN = re.compile(r"^[a-z0-9-]+$")
SWARM_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")

MAX_DOCKER_TAG_LENGTH = 128
MAX_K8S_NAMESPACE_LENGTH = 63
MAX_K8S_DEPLOYMENT_NAME_LENGTH = 253
MAX_SWARM_SERVICE_NAME_LENGTH = 63

DANGEROUS_SEQUENCES = ("$(", "`", ";", "|", "&&", ">", "<", "&")
ALL_CONTAINERS = "*"


class ValidationError(ValueError):
    """Raised when an input is unsafe to pass to an external command."""

    pass


def validate_docker_image_name(image_name: str) -> str:
    if not image_name:
        raise ValidationError("Docker image name cannot be empty")
    for seq in DANGEROUS_SEQUENCES:
        if seq in image_name:
            raise ValidationError(f"Docker image name contains dangerous character: {seq}")
    if not DOCKER_IMAGE_PATTERN.match(image_name):
        raise ValidationError(
            f"Invalid Docker image name: {image_name}. Only alphanumeric, dots, "
            "hyphens, underscores, slashes, and colons are allowed"
        )
    return image_name


def validate_docker_tag(tag: str) -> str:
    if not tag:
        raise ValidationError("Docker tag cannot be empty")
    if not DOCKER_TAG_PATTERN.match(tag):
        raise ValidationError(
            f"Invalid Docker tag: {tag}. Only alphanumeric, dots, hyphens, "
            "and underscores are allowed"
        )
    if len(tag) > MAX_DOCKER_TAG_LENGTH:
        raise ValidationError(
            f"Docker tag too long: {len(tag)} characters. Maximum is {MAX_DOCKER_TAG_LENGTH}"
        )
    return tag


def validate_file_path(file_path: str) -> str:
    """Reject traversal, home expansion and unusual characters."""
    if not file_path:
        raise ValidationError("File path cannot be empty")
    if ".." in file_path or "~" in file_path:
        raise ValidationError(f"File path contains dangerous directory traversal: {file_path}")
    if not FILE_PATH_PATTERN.match(file_path):
        raise ValidationError(
            f"Invalid file path: {file_path}. Only alphanumeric, dots, hyphens, "
            "underscores, and slashes are allowed"
        )
    return file_path


def validate_context_path(context_path: str) -> str:
    """A build context must be a safe, relative path."""
    validate_file_path(context_path)
    if context_path.startswith("/"):
        raise ValidationError(f"Context path should be relative, not absolute: {context_path}")
    return context_path


def _validate_k8s_name(value: str, kind: str, max_length: int) -> str:
    if not value:
        raise ValidationError(f"Kubernetes {kind} cannot be empty")
    if not K8S_NAME_PATTERN.match(value):
        raise ValidationError(
            f"Invalid Kubernetes {kind}: {value}. "
            "Only lowercase alphanumeric and hyphens are allowed"
        )
    if value.startswith("-") or value.endswith("-"):
        raise ValidationError(f"Kubernetes {kind} cannot start or end with hyphen: {value}")
    if len(value) > max_length:
        raise ValidationError(
            f"Kubernetes {kind} too long: {len(value)} characters. Maximum is {max_length}"
        )
    return value


def validate_k8s_namespace(namespace: str) -> str:
    return _validate_k8s_name(namespace, "namespace", MAX_K8S_NAMESPACE_LENGTH)


def validate_k8s_deployment_name(deployment_name: str) -> str:
    return _validate_k8s_name(deployment_name, "deployment name", MAX_K8S_DEPLOYMENT_NAME_LENGTH)


def validate_container_name(container_name: str | None) -> str:
    """Container selector for ``kubectl set image``, ``*`` means all."""
    if not container_name or container_name == ALL_CONTAINERS:
        return ALL_CONTAINERS
    if not K8S_NAME_PATTERN.match(container_name):
        raise ValidationError(
            f"Invalid container name: {container_name}. "
            "Only lowercase alphanumeric and hyphens are allowed"
        )
    return container_name


def validate_swarm_name(value: str, kind: str = "service name") -> str:
    """Docker Swarm service or Docker context name."""
    if not value:
        raise ValidationError(f"Docker {kind} cannot be empty")
    if not SWARM_NAME_PATTERN.match(value):
        raise ValidationError(
            f"Invalid Docker {kind}: {value}. Only alphanumeric, dots, hyphens, "
            "and underscores are allowed"
        )
    if len(value) > MAX_SWARM_SERVICE_NAME_LENGTH:
        raise ValidationError(
            f"Docker {kind} too long: {len(value)} characters. "
            f"Maximum is {MAX_SWARM_SERVICE_NAME_LENGTH}"
        )
    return value
