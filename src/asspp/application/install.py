from __future__ import annotations

import plistlib
from urllib.parse import quote

from src.asspp.domain.exceptions import InvalidRequestError
from src.asspp.domain.models.task import Task

# Metadata names, as submitted through X-Meta-<name> headers.
BUNDLE_ID = "bundle-id"
BUNDLE_VERSION = "bundle-version"
TITLE = "title"


def build_manifest(task: Task, payload_url: str) -> bytes:
    """Render the over-the-air install manifest for a finished package."""
    custom = task.metadata.custom or {}
    bundle_id = custom.get(BUNDLE_ID)
    if not bundle_id:
        raise InvalidRequestError(f"Task '{task.id}' has no {BUNDLE_ID} metadata")
    manifest = {
        "items": [
            {
                "assets": [{"kind": "software-package", "url": payload_url}],
                "metadata": {
                    "bundle-identifier": str(bundle_id),
                    "bundle-version": str(custom.get(BUNDLE_VERSION) or "1.0"),
                    "kind": "software",
                    "title": str(custom.get(TITLE) or task.filename.rsplit(".", 1)[0]),
                },
            }
        ]
    }
    return plistlib.dumps(manifest)


def install_link(manifest_url: str) -> str:
    return f"itms-services://?action=download-manifest&url={quote(manifest_url, safe='')}"
