"""Detect when a tracked artifact moves to a new digest."""

import logging

from flux_converge.exceptions import ArtifactException

from .resolver import ArtifactResolver, Auth

__all__ = [
    "ArtifactDriftDetector",
]

_LOGGER = logging.getLogger(__name__)


class ArtifactDriftDetector:
    """Compares the current digest of an artifact against the last known one."""

    def __init__(self, resolver: ArtifactResolver) -> None:
        self._resolver = resolver

    async def should_reconcile(
        self, url: str, last_known_digest: str | None, auth: Auth | None = None
    ) -> tuple[str, bool]:
        """Return the current digest and whether it differs from the last one.

        Without a last known digest nothing is resolved and no drift is
        reported, since the first reconciliation has not recorded a baseline
        yet. Resolution errors are raised as ArtifactException.
        """
        if not last_known_digest:
            _LOGGER.debug("No baseline digest recorded for %s", url)
            return "", False
        try:
            digest = await self._resolver.resolve_digest(url, auth)
        except ArtifactException:
            raise
        except Exception as err:
            raise ArtifactException(f"failed to resolve {url}: {err}") from err
        changed = digest != last_known_digest
        if changed:
            _LOGGER.info(
                "Artifact %s changed from %s to %s", url, last_known_digest, digest
            )
        return digest, changed
