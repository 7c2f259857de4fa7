from __future__ import annotations

import structlog
from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException

from kargo_server.config import Settings
from kargo_server.exceptions import InternalError

logger = structlog.get_logger(__name__)


def load_rest_config(settings: Settings) -> client.Configuration:
    """Build a fresh client configuration for the server's own identity.

    In-cluster service account credentials are used unless a kubeconfig path
    is configured. The global default configuration is left untouched.
    """
    configuration = client.Configuration()
    try:
        if settings.kube_config_path:
            config.load_kube_config(
                config_file=settings.kube_config_path,
                context=settings.kube_context,
                client_configuration=configuration,
            )
            source = "kubeconfig"
        else:
            config.load_incluster_config(client_configuration=configuration)
            source = "in-cluster"
    except ConfigException as exc:
        logger.error("kubernetes.config_missing", error=str(exc))
        raise InternalError(f"error loading Kubernetes client configuration: {exc}") from exc

    logger.info("kubernetes.config_loaded", source=source, host=configuration.host, context=settings.kube_context)
    return configuration
