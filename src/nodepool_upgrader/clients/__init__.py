"""Collaborators of the orchestrator: node provisioners, traffic routers, and API client wrappers."""

from __future__ import annotations

from kubernetes import client as k8s_client
from kubernetes.config import new_client_from_config


def load_k8s_api_client(context: str) -> k8s_client.ApiClient:
    """Create an isolated Kubernetes API client for the given kubeconfig context.

    Uses new_client_from_config to avoid mutating the global K8s SDK configuration,
    so provisioners for different clusters can run in the same process.
    """
    return new_client_from_config(context=context)
