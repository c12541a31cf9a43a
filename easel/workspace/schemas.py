"""Correlation envelopes exchanged with the canvas peer.

Every envelope is a JSON object with a ``kind`` discriminator and an
``id``. Anything that does not parse as one of these belongs to the sync
transport riding on the same connection.
"""

from __future__ import annotations

import json
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError


class SnapshotRequest(BaseModel):
    kind: Literal["snapshot-request"] = "snapshot-request"
    id: str
    page: str | None = None


class SnapshotResponse(BaseModel):
    kind: Literal["snapshot-response"] = "snapshot-response"
    id: str
    page: str = ""
    png: str  # base64, no data: prefix


class ExportPage(BaseModel):
    name: str
    png: str


class ExportRequest(BaseModel):
    kind: Literal["export-request"] = "export-request"
    id: str


class ExportResponse(BaseModel):
    kind: Literal["export-response"] = "export-response"
    id: str
    pages: list[ExportPage] = Field(default_factory=list)


PeerResponse = Annotated[
    Union[SnapshotResponse, ExportResponse], Field(discriminator="kind")
]

_response_adapter: TypeAdapter[SnapshotResponse | ExportResponse] = TypeAdapter(PeerResponse)

RESPONSE_KINDS = ("snapshot-response", "export-response")


def parse_response(raw: str | bytes) -> SnapshotResponse | ExportResponse | None:
    """Parse ``raw`` as a response envelope; None for anything else."""
    try:
        return _response_adapter.validate_json(raw)
    except ValidationError:
        return None


def peek_response_id(raw: str | bytes) -> str | None:
    """The ``id`` of anything shaped like a response envelope, valid or not."""
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(data, dict) or data.get("kind") not in RESPONSE_KINDS:
        return None
    request_id = data.get("id")
    return request_id if isinstance(request_id, str) else None
