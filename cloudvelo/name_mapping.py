"""Mapping of client uploads to S3 object keys."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field


@dataclass
class UploadRequest:
    """Describes a file uploaded by a client."""

    client_id: str = ""
    session_id: str = ""
    accessor: str = ""
    components: list[str] = field(default_factory=list)
    type: str = ""


def normalized_org_id(org_id: str) -> str:
    """Return the canonical org id; the empty id is the root org."""
    if not org_id or org_id == "root":
        return "root"
    return org_id


def s3_components_for_client_upload(request: UploadRequest) -> list[str]:
    """Return the S3 path components for a client upload.

    The client path is hashed because S3 keys are limited in length and
    there is never a need to map a key back to the client path.
    """
    base = ["clients", request.client_id, "collections",
            request.session_id, "uploads", request.accessor]

    client_path = "\x00".join(request.components)
    file_name = hashlib.sha256(client_path.encode("utf-8")).hexdigest()

    if request.type == "idx":
        file_name += ".idx"

    return [*base, file_name]


def s3_key_for_client_upload(org_id: str, request: UploadRequest) -> str:
    """Build the S3 key for a client upload request."""
    components = ["orgs", normalized_org_id(org_id),
                  *s3_components_for_client_upload(request)]
    return "/".join(components)