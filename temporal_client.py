"""Temporal client factory.

Creates connections to Temporal using the pipeline settings. A local dev
server (no API key) is reached without TLS; Temporal Cloud uses TLS plus the
API key.
"""

from typing import Optional

from temporalio.client import Client

from core.config import Settings


DEFAULT_LOCAL_ENDPOINT = "localhost:7233"


async def get_temporal_client(settings: Optional[Settings] = None) -> Client:
    """Create and return a Temporal client.

    Reads configuration from settings (environment variables):
    - TEMPORAL_ENDPOINT: host:port (defaults to the local dev server)
    - TEMPORAL_NAMESPACE: Namespace (e.g., "default")
    - TEMPORAL_API_KEY: API key for Temporal Cloud

    Returns:
        Connected Temporal client

    Raises:
        ValueError: If an API key is set without an endpoint
    """
    settings = settings or Settings.from_env()

    if settings.temporal_api_key and not settings.temporal_endpoint:
        raise ValueError(
            "TEMPORAL_ENDPOINT environment variable not set. "
            "Set to your Temporal Cloud endpoint (e.g., 'namespace.tmprl.cloud:7233')"
        )

    endpoint = settings.temporal_endpoint or DEFAULT_LOCAL_ENDPOINT

    if settings.temporal_api_key:
        return await Client.connect(
            target_host=endpoint,
            namespace=settings.temporal_namespace,
            tls=True,
            api_key=settings.temporal_api_key,
        )

    return await Client.connect(endpoint, namespace=settings.temporal_namespace)
