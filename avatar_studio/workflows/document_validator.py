"""
Uploaded PDF checks, then hand-off to script generation.
"""

import logging

from .. import events
from ..errors import NonRetriableError
from ..models import DocumentStatus, ProjectStatus

logger = logging.getLogger(__name__)

MAX_DOCUMENT_BYTES = 10 * 1024 * 1024
ALLOWED_MIME_TYPES = {"application/pdf"}


def check_document(metadata: dict) -> None:
    """Raise NonRetriableError if the file is too large or not a PDF."""
    size = metadata.get("file_size")
    if not isinstance(size, (int, float)):
        size = 0
    if size > MAX_DOCUMENT_BYTES:
        raise NonRetriableError(f"File size {size} bytes exceeds the 10MB limit")
    if metadata.get("mime_type") not in ALLOWED_MIME_TYPES:
        raise NonRetriableError(f"File must be a PDF (got {metadata.get('mime_type') or 'unknown type'})")


def validate_document(ctx, event):
    store = ctx.deps.store
    data = ctx.data
    document_id = data["document_id"]
    project_id = data["project_id"]

    document = ctx.run_step("fetch-document",
                            lambda: store.get_document(document_id).model_dump(mode="json"))

    ctx.run_step("validate-pdf", lambda: check_document(document.get("metadata") or {}))

    ctx.run_step("update-document-status",
                 lambda: store.update_document(document_id, status=DocumentStatus.PROCESSED))
    ctx.run_step("update-project-status",
                 lambda: store.set_project_status(project_id, ProjectStatus.DOCUMENT_UPLOADED).status.value)

    ctx.send_event("trigger-script-generation", events.SCRIPT_GENERATION_REQUESTED, {
        "project_id": project_id,
        "document_id": document_id,
        "user_id": data.get("user_id"),
    })

    logger.info(f"[{project_id}] document {document_id} validated")
    return {"success": True, "document_id": document_id}


def on_document_failure(ctx, error: BaseException):
    store = ctx.deps.store
    data = ctx.data
    store.update_document(data["document_id"], status=DocumentStatus.FAILED)
    store.set_project_status(data["project_id"], ProjectStatus.FAILED, error_message=str(error))
