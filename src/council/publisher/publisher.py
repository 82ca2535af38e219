"""
Change publisher.

Writes the final artifact versions and the review report of a run as a
reviewable change-set::

    <run_id>/files/<logical path>
    <run_id>/review.json
    <run_id>/CHANGESET.md
    <run_id>/manifest.json

Publishing is keyed by run id: publishing the same final state again returns
the existing reference and writes nothing. Every change-set starts
``unreviewed`` and only an explicit approval moves it to ``approved``.
"""

import hashlib
import json

from ..errors import CouncilError, RunNotFound
from ..models import Artifact, ChangeSetRef, ChangeSetStatus, ReviewReport, Run, utcnow
from ..observability.logging import get_logger
from ..storage.blobs import BlobStore

logger = get_logger(__name__)

UNREVIEWED_STATUS = "Status: UNREVIEWED (human approval required before merge)"


def change_digest(artifacts: list[Artifact], review: ReviewReport) -> str:
    payload = {
        "files": sorted((a.path, a.version, a.digest) for a in artifacts),
        "findings": review.to_dict()["findings"],
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


class ChangePublisher:
    def __init__(self, blobs: BlobStore):
        self.blobs = blobs

    def publish(self, run: Run, artifacts: list[Artifact], review: ReviewReport) -> ChangeSetRef:
        digest = change_digest(artifacts, review)
        manifest_key = f"{run.run_id}/manifest.json"

        if self.blobs.exists(manifest_key):
            manifest = self.blobs.read_json(manifest_key)
            if manifest["digest"] != digest:
                raise CouncilError(
                    f"Run {run.run_id} was already published with different content"
                )
            logger.info("Change-set already published", run_id=run.run_id)
            return ChangeSetRef.from_dict(manifest["change_set"])

        for artifact in artifacts:
            self.blobs.save_text(f"{run.run_id}/files/{artifact.path}", artifact.content)
        review_ref = self.blobs.save_json(f"{run.run_id}/review.json", review.to_dict())
        self.blobs.save_text(f"{run.run_id}/CHANGESET.md", self._summary(run, artifacts, review))

        ref = ChangeSetRef(
            change_set_id=f"cs_{run.run_id}_{digest[:12]}",
            run_id=run.run_id,
            branch=run.requested_branch_name,
            location=review_ref.uri.rsplit("/", 1)[0],
            files=sorted(a.path for a in artifacts),
        )
        # The manifest is written last and exclusively; its presence marks
        # the change-set as published.
        self.blobs.create_json(manifest_key, {"digest": digest, "change_set": ref.to_dict()})
        logger.info(
            "Change-set published",
            run_id=run.run_id,
            change_set_id=ref.change_set_id,
            files=len(ref.files),
        )
        return ref

    def get(self, run_id: str) -> ChangeSetRef:
        key = f"{run_id}/manifest.json"
        if not self.blobs.exists(key):
            raise RunNotFound(run_id)
        return ChangeSetRef.from_dict(self.blobs.read_json(key)["change_set"])

    def approve(self, run_id: str, reviewer: str) -> ChangeSetRef:
        """Record the human approval signal for a published change-set."""
        if not reviewer or not reviewer.strip():
            raise ValueError("reviewer must be non-empty")
        key = f"{run_id}/manifest.json"
        if not self.blobs.exists(key):
            raise RunNotFound(run_id)
        manifest = self.blobs.read_json(key)
        ref = ChangeSetRef.from_dict(manifest["change_set"])
        if ref.status is ChangeSetStatus.APPROVED:
            return ref
        ref.status = ChangeSetStatus.APPROVED
        ref.approved_by = reviewer.strip()
        ref.approved_at = utcnow()
        manifest["change_set"] = ref.to_dict()
        self.blobs.save_json(key, manifest)
        summary_key = f"{run_id}/CHANGESET.md"
        if self.blobs.exists(summary_key):
            approved = f"Status: APPROVED by {ref.approved_by} at {ref.approved_at.isoformat()}"
            summary = self.blobs.read_text(summary_key)
            self.blobs.save_text(summary_key, summary.replace(UNREVIEWED_STATUS, approved))
        logger.info("Change-set approved", run_id=run_id, reviewer=ref.approved_by)
        return ref

    @staticmethod
    def _summary(run: Run, artifacts: list[Artifact], review: ReviewReport) -> str:
        lines = [
            f"# {run.feature_description}",
            "",
            f"Branch: `{run.requested_branch_name}`",
            UNREVIEWED_STATUS,
            "",
            "## Verification",
        ]
        for language, track in sorted(run.tracks.items()):
            lines.append(f"- {language}: {track.status.value} after {track.attempts} attempt(s)")
        lines += ["", "## Files"]
        lines += [
            f"- `{a.path}` (v{a.version}, {a.kind.value})"
            for a in sorted(artifacts, key=lambda a: a.path)
        ]
        lines += ["", "## Review"]
        if review.warning:
            lines.append(f"> {review.warning}")
        if not review.findings:
            lines.append("No findings.")
        for finding in review.findings:
            lines.append(f"- **{finding.severity.value}** `{finding.file}`: {finding.message}")
        return "\n".join(lines) + "\n"
