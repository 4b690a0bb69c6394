"""Startup push of the local nginx.conf to Apollo, followed by a release."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from .config import AgentConfig
from .config_env import CONFIG_COMMENT
from .remote_config import ApolloOpenApiClient, ReleaseRecord, RemoteConfigError, RemoteConfigRecord

logger = logging.getLogger(__name__)


class BootstrapError(RuntimeError):
    pass


def _read_local_config(config: AgentConfig) -> str:
    try:
        data = config.managed_path.read_bytes()
    except OSError as exc:
        raise BootstrapError(f"Cannot read local config {config.managed_path}: {exc}") from exc
    # Content after a NUL byte is never part of a text config.
    data = data.split(b"\x00", 1)[0]
    return data.decode("utf-8", errors="replace")


def bootstrap_sync(
    config: AgentConfig,
    client: ApolloOpenApiClient,
    *,
    now: Optional[datetime] = None,
) -> ReleaseRecord:
    """Upsert the local file as the app's item and publish the namespace.

    Any failure raises ``BootstrapError``; the loop must not start against an
    authority that does not hold the local state.
    """
    record = RemoteConfigRecord(
        key=config.app_id,
        value=_read_local_config(config),
        comment=CONFIG_COMMENT,
        data_change_created_by=config.created_by,
        data_change_last_modified_by=config.created_by,
    )
    try:
        client.upsert_item(record)
    except RemoteConfigError as exc:
        raise BootstrapError(f"Failed to push local config to Apollo: {exc}") from exc
    logger.info(
        "Pushed %s (%d bytes) to Apollo item %s",
        config.managed_path, len(record.value.encode("utf-8")), config.app_id,
    )

    release = ReleaseRecord.for_author(config.created_by, now=now)
    try:
        client.publish_release(release)
    except RemoteConfigError as exc:
        raise BootstrapError(f"Failed to publish release {release.release_title}: {exc}") from exc
    logger.info("Published release %s by %s", release.release_title, release.released_by)
    return release
