"""File based template storage.

Layout, one directory per template:

    <base_dir>/<template_id>/draft.json   the editable draft (optional)
    <base_dir>/<template_id>/v1.json      published versions, append-only
    <base_dir>/<template_id>/v2.json      ...

Published files are created exclusively and never rewritten, so assignments can
always resolve the exact version they were cloned from.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from pathlib import Path

from ..clock import Clock, SystemClock
from ..errors import NotFound, TemplateValidationError
from ..jsonfile import dump_json, write_json_atomic
from .models import WorkflowTemplate
from .validation import validate_template

logger = logging.getLogger(__name__)

_VERSION_FILE_RE = re.compile(r"^v(\d+)\.json$")
_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")


class TemplateStore:
    """Stores template drafts and published versions as JSON files."""

    def __init__(self, base_dir: Path, *, clock: Clock | None = None) -> None:
        self.base_dir = base_dir
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()

    def _template_dir(self, template_id: str) -> Path:
        if not _SAFE_ID_RE.match(template_id):
            raise ValueError(f"Template id {template_id!r} is not a safe identifier")
        return self.base_dir / template_id

    def _versions_unlocked(self, template_id: str) -> list[int]:
        tdir = self._template_dir(template_id)
        if not tdir.exists():
            return []
        versions = []
        for path in tdir.iterdir():
            match = _VERSION_FILE_RE.match(path.name)
            if match:
                versions.append(int(match.group(1)))
        return sorted(versions)

    def list_templates(self) -> list[str]:
        if not self.base_dir.exists():
            return []
        return sorted(p.name for p in self.base_dir.iterdir() if p.is_dir())

    def list_versions(self, template_id: str) -> list[int]:
        with self._lock:
            return self._versions_unlocked(template_id)

    def save_draft(self, template: WorkflowTemplate) -> WorkflowTemplate:
        draft = template.model_copy(
            update={"status": "draft", "version": 0, "published_at": None}, deep=True
        )
        with self._lock:
            write_json_atomic(
                self._template_dir(draft.id) / "draft.json", draft.model_dump(mode="json")
            )
        logger.info("Template draft saved", extra={"template_id": draft.id})
        return draft

    def get_draft(self, template_id: str) -> WorkflowTemplate:
        path = self._template_dir(template_id) / "draft.json"
        if not path.exists():
            raise NotFound(f"No draft for template {template_id!r}")
        return WorkflowTemplate.model_validate(json.loads(path.read_text(encoding="utf-8")))

    def new_draft_from_published(self, template_id: str) -> WorkflowTemplate:
        """Start editing a published template by copying its latest version."""

        published, _version = self.get_published(template_id)
        return self.save_draft(published)

    def publish(self, draft: WorkflowTemplate) -> int:
        """Validate and freeze a draft as the next version. Returns the new version."""

        errors = validate_template(draft)
        if errors:
            raise TemplateValidationError(draft.id, errors)

        with self._lock:
            tdir = self._template_dir(draft.id)
            tdir.mkdir(parents=True, exist_ok=True)
            versions = self._versions_unlocked(draft.id)
            version = (versions[-1] if versions else 0) + 1
            published = draft.model_copy(
                update={
                    "status": "published",
                    "version": version,
                    "published_at": self._clock.now(),
                },
                deep=True,
            )
            # "x" mode: an existing version file is never overwritten.
            with (tdir / f"v{version}.json").open("x", encoding="utf-8") as fh:
                fh.write(dump_json(published.model_dump(mode="json")))
            draft_path = tdir / "draft.json"
            if draft_path.exists():
                draft_path.unlink()

        logger.info(
            "Template published",
            extra={"template_id": draft.id, "version": version},
        )
        return version

    def get_published(
        self, template_id: str, version: int | None = None
    ) -> tuple[WorkflowTemplate, int]:
        with self._lock:
            versions = self._versions_unlocked(template_id)
        if not versions:
            raise NotFound(f"Template {template_id!r} has no published version")
        resolved = versions[-1] if version is None else version
        if resolved not in versions:
            raise NotFound(f"Template {template_id!r} has no version {resolved}")
        path = self._template_dir(template_id) / f"v{resolved}.json"
        template = WorkflowTemplate.model_validate(json.loads(path.read_text(encoding="utf-8")))
        return template, resolved
