"""Service descriptor resolution and job name lookup."""

from typing import Dict, List, Optional, Union

from pydantic import ValidationError

from jobrelay.core.exceptions import (
    ConfigResolutionError,
    EndpointNotFoundError,
    RemoteServiceException,
)
from jobrelay.core.interfaces.http_client import HttpClientPort
from jobrelay.core.interfaces.retry import RetryPort
from jobrelay.core.models.service_config import Dependency, ServiceConfig
from jobrelay.core.services.transfer import auth_headers
from jobrelay.core.settings import logger


async def resolve_config(
    http: HttpClientPort,
    base_url: str,
    token: Optional[str] = None,
    retry: Optional[RetryPort] = None,
    **retry_overrides,
) -> ServiceConfig:
    """Fetch ``{base_url}/config`` and return the parsed descriptor.

    ``root`` is set to ``base_url`` and ``path`` defaults to an empty string.
    The fetch is idempotent, so the retry port (if given) may repeat it on
    transient upstream failures.

    Raises:
        ConfigResolutionError: on any upstream failure or unparseable body.
    """
    base_url = base_url.rstrip("/")
    url = f"{base_url}/config"
    headers = auth_headers(token)

    async def fetch():
        return await http.get(url, headers=headers)

    try:
        if retry is not None:
            body = await retry.execute(fetch, **retry_overrides)
        else:
            body = await fetch()
    except RemoteServiceException as exc:
        logger.error(
            f"[config:resolve] fetch failed url={url} status={exc.response.status} title={exc.response.title}"
        )
        raise ConfigResolutionError(
            "Could not get config.", base_url=base_url, upstream_status=exc.response.status
        ) from exc

    if not isinstance(body, dict):
        raise ConfigResolutionError("Could not get config.", base_url=base_url)

    try:
        config = ServiceConfig.model_validate(body)
    except ValidationError as exc:
        logger.error(f"[config:resolve] invalid descriptor url={url} error={exc}")
        raise ConfigResolutionError("Could not get config.", base_url=base_url) from exc

    config.root = base_url
    config.path = config.path or ""
    logger.debug(
        f"[config:resolve] resolved root={config.root} protocol={config.protocol} "
        f"version={config.version} dependencies={len(config.dependencies)}"
    )
    return config


def map_names_to_ids(dependencies: List[Dependency]) -> Dict[str, int]:
    """Map each named dependency to its function index."""
    api_map: Dict[str, int] = {}
    for i, dependency in enumerate(dependencies):
        if dependency.api_name:
            api_map[dependency.api_name] = i
    return api_map


def lookup_job_index(endpoint: Union[int, str], api_map: Dict[str, int]) -> int:
    """Resolve a job reference (index or name, leading slash optional) to its index."""
    if isinstance(endpoint, bool):
        raise EndpointNotFoundError(endpoint)
    if isinstance(endpoint, int):
        if endpoint < 0:
            raise EndpointNotFoundError(endpoint)
        return endpoint
    name = endpoint.strip()
    if name.startswith("/"):
        name = name[1:]
    if name not in api_map:
        raise EndpointNotFoundError(endpoint)
    return api_map[name]
