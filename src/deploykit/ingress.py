"""Ingress host lookup for the setup summary."""

from __future__ import annotations

import logging
from collections.abc import Callable

from .shell import CommandError, run_command

logger = logging.getLogger(__name__)

KUBECTL_TIMEOUT_SECONDS = 30
HOSTS_JSONPATH = "jsonpath={.spec.rules[*].host}"

IngressLookup = Callable[[str, str], "list[str]"]


def lookup_ingress_hosts(namespace: str, name: str, kubectl: str = "kubectl") -> list[str]:
    """Hosts routed by ingress ``name`` in ``namespace``.

    Best effort: any kubectl failure gives an empty list and never fails
    the run.
    """
    if not namespace or not name:
        return []

    cmd = [kubectl, "get", "ingress", name, "-n", namespace, "-o", HOSTS_JSONPATH]
    try:
        result = run_command(cmd, timeout=KUBECTL_TIMEOUT_SECONDS, capture=True)
    except CommandError as e:
        logger.debug(
            "Ingress lookup failed",
            extra={"ingress": name, "namespace": namespace, "error": str(e)},
        )
        return []

    hosts = (result.stdout or "").split()
    if hosts:
        logger.info("Found ingress hosts", extra={"ingress": name, "hosts": hosts})
    return hosts
