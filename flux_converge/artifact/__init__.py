"""Artifact digest resolution and drift detection."""

from .drift import ArtifactDriftDetector
from .resolver import ArtifactResolver, Auth, OrasArtifactResolver, get_auth_from_secret

__all__ = [
    "ArtifactDriftDetector",
    "ArtifactResolver",
    "Auth",
    "OrasArtifactResolver",
    "get_auth_from_secret",
]
