"""
Append-only, versioned artifact store keyed by (run id, logical path).

Each version is an immutable JSON record at
``runs/<run_id>/artifacts/<quoted path>/v<version>.json``. Versions start at 1
and increase by one per append; earlier versions are never rewritten.
"""

import asyncio
import re
from collections import defaultdict
from urllib.parse import quote, unquote

from ..models import Artifact, ArtifactKind, ArtifactStage, utcnow
from ..observability.logging import get_logger
from .blobs import BlobStore

logger = get_logger(__name__)

_VERSION_FILE = re.compile(r"^v(\d+)\.json$")


class VersionedArtifactStore:
    """Versioned artifacts on top of a blob store."""

    def __init__(self, blobs: BlobStore):
        self.blobs = blobs
        self._locks: dict[tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    @staticmethod
    def _dir(run_id: str, path: str) -> str:
        return f"runs/{run_id}/artifacts/{quote(path, safe='')}"

    def _versions(self, run_id: str, path: str) -> list[int]:
        versions = []
        for blob in self.blobs.list_paths(self._dir(run_id, path)):
            match = _VERSION_FILE.match(blob.rsplit("/", 1)[-1])
            if match:
                versions.append(int(match.group(1)))
        return sorted(versions)

    async def append(
        self,
        run_id: str,
        path: str,
        language: str,
        content: str,
        stage: ArtifactStage,
        kind: ArtifactKind,
    ) -> Artifact:
        """Store ``content`` as the next version of ``path`` within ``run_id``."""
        async with self._locks[(run_id, path)]:
            versions = self._versions(run_id, path)
            version = (versions[-1] if versions else 0) + 1
            while True:
                artifact = Artifact(
                    run_id=run_id,
                    path=path,
                    language=language,
                    content=content,
                    stage=stage,
                    kind=kind,
                    version=version,
                    created_at=utcnow(),
                )
                try:
                    self.blobs.create_json(
                        f"{self._dir(run_id, path)}/v{version:06d}.json", artifact.to_dict()
                    )
                    break
                except FileExistsError:
                    # Another process appended first.
                    version += 1

        logger.debug(
            "Appended artifact version",
            path=path,
            version=version,
            stage=stage.value,
            language=language,
        )
        return artifact

    def get(self, run_id: str, path: str, version: int) -> Artifact:
        data = self.blobs.read_json(f"{self._dir(run_id, path)}/v{version:06d}.json")
        return Artifact.from_dict(data)

    def latest(self, run_id: str, path: str) -> Artifact | None:
        versions = self._versions(run_id, path)
        if not versions:
            return None
        return self.get(run_id, path, versions[-1])

    def history(self, run_id: str, path: str) -> list[Artifact]:
        return [self.get(run_id, path, v) for v in self._versions(run_id, path)]

    def paths(self, run_id: str) -> list[str]:
        prefix = f"runs/{run_id}/artifacts"
        found = {
            unquote(blob[len(prefix) + 1 :].split("/", 1)[0])
            for blob in self.blobs.list_paths(prefix)
        }
        return sorted(found)

    def latest_for_run(
        self, run_id: str, language: str | None = None, kind: ArtifactKind | None = None
    ) -> list[Artifact]:
        """Latest version of every artifact in the run, optionally filtered."""
        result = []
        for path in self.paths(run_id):
            artifact = self.latest(run_id, path)
            if artifact is None:
                continue
            if language is not None and artifact.language != language:
                continue
            if kind is not None and artifact.kind is not kind:
                continue
            result.append(artifact)
        return result
