"""Pydantic schemas for the node REST API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class StatusData(BaseModel):
    """Chain tip as reported by GET /status."""

    blockchain_height: int
    difficulty: int
    difficulty_bits: int | None = 0
    last_block_hash: str


class StatusResponse(BaseModel):
    success: bool
    message: str = ""
    data: StatusData | None = None


class MempoolData(BaseModel):
    transactions: list[dict[str, Any]] | None = None


class MempoolResponse(BaseModel):
    success: bool
    message: str = ""
    data: MempoolData | None = None


class SubmitResponse(BaseModel):
    """Response for POST /block/submit."""

    success: bool
    message: str = ""
