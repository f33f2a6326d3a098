"""
Bootstrap service instances from environment variables.

For each known service, <SERVICE>_URL creates the instance "<type>1" if it
does not exist yet, or updates its URL and credential when they differ.
Instances created this way carry their display order in config["order"].
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from dasharr.errors import DasharrError
from dasharr.logging import get_logger
from dasharr.metrics.storage import ServiceInstance

if TYPE_CHECKING:
    from dasharr.metrics.storage import MetricsStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class EnvService:
    """Environment variables that describe one service."""

    service_type: str
    name: str
    order: int
    url_var: str
    secret_var: str
    secret_field: str = "api_key"
    username_var: str | None = None

    @property
    def instance_id(self) -> str:
        return f"{self.service_type}1"


ENV_SERVICES: tuple[EnvService, ...] = (
    EnvService("plex", "Plex", 1, "PLEX_URL", "PLEX_TOKEN"),
    EnvService("jellyfin", "Jellyfin", 2, "JELLYFIN_URL", "JELLYFIN_API_KEY"),
    EnvService("overseerr", "Overseerr", 3, "OVERSEERR_URL", "OVERSEERR_API_KEY"),
    EnvService("jellyseerr", "Jellyseerr", 4, "JELLYSEERR_URL", "JELLYSEERR_API_KEY"),
    EnvService("tautulli", "Tautulli", 5, "TAUTULLI_URL", "TAUTULLI_API_KEY"),
    EnvService("radarr", "Radarr", 6, "RADARR_URL", "RADARR_API_KEY"),
    EnvService("sonarr", "Sonarr", 7, "SONARR_URL", "SONARR_API_KEY"),
    EnvService("prowlarr", "Prowlarr", 8, "PROWLARR_URL", "PROWLARR_API_KEY"),
    EnvService("sabnzbd", "SABnzbd", 9, "SABNZBD_URL", "SABNZBD_API_KEY"),
    EnvService(
        "qbittorrent",
        "qBittorrent",
        10,
        "QBITTORRENT_URL",
        "QBITTORRENT_PASSWORD",
        secret_field="password",
        username_var="QBITTORRENT_USERNAME",
    ),
    EnvService("bazarr", "Bazarr", 11, "BAZARR_URL", "BAZARR_API_KEY"),
)


async def sync_instances_from_env(
    store: MetricsStore,
    environ: Mapping[str, str] | None = None,
    services: tuple[EnvService, ...] = ENV_SERVICES,
) -> int:
    """
    Create or update service instances from environment variables.

    A missing credential variable never clears a stored credential. Failures
    are logged per service and do not stop the sync.

    Args:
        store: Initialized store.
        environ: Variables to read, defaults to os.environ.
        services: Services to look for.

    Returns:
        Number of instances created or updated.
    """
    env = os.environ if environ is None else environ
    synced = 0

    for service in services:
        url = env.get(service.url_var)
        if not url:
            continue

        secret = env.get(service.secret_var) or None
        username = env.get(service.username_var) if service.username_var else None

        try:
            existing = await store.get_service_instance(service.instance_id)
            if existing is None:
                instance = ServiceInstance(
                    id=service.instance_id,
                    service_type=service.service_type,
                    name=service.name,
                    url=url,
                    username=username or None,
                    config={"order": service.order},
                )
                setattr(instance, service.secret_field, secret)
                await store.save_service_instance(instance)
                logger.info(
                    "Added service instance from environment",
                    extra={"instance_id": service.instance_id},
                )
                synced += 1
                continue

            updates: dict[str, str] = {}
            if existing.url != url:
                updates["url"] = url
            if secret and getattr(existing, service.secret_field) != secret:
                updates[service.secret_field] = secret
            if username and existing.username != username:
                updates["username"] = username
            if not updates:
                continue

            await store.save_service_instance(replace(existing, **updates))
            logger.info(
                "Updated service instance from environment",
                extra={"instance_id": service.instance_id, "fields": sorted(updates)},
            )
            synced += 1
        except DasharrError as e:
            logger.error(
                "Failed to sync service instance from environment",
                extra={"instance_id": service.instance_id, "error": str(e)},
            )

    if synced:
        logger.info("Synced service instances from environment", extra={"count": synced})
    else:
        logger.debug("No environment variable updates needed")
    return synced
