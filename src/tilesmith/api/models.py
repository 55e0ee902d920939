"""Pydantic request and response models for the Tilesmith API.

Models
------
GenerateRequest
    Payload for ``POST /api/ai/generate`` — the template to use and the
    parameter values chosen in the generator UI.
GenerateResponse
    Result of a generation request, new or served from an existing tile.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class GenerateRequest(BaseModel):
    """Request body for the ``POST /api/ai/generate`` endpoint.

    Attributes:
        template_id: Identifier of the template (``templateId`` in JSON).
        params: Parameter values keyed by parameter name.  Missing values are
            filled from the template defaults before validation.
    """

    model_config = ConfigDict(populate_by_name=True)

    template_id: str = Field(
        ...,
        alias="templateId",
        min_length=1,
        description="Template identifier from prompt-templates.json.",
    )
    params: dict[str, Any] | None = Field(
        default=None,
        description="Parameter values keyed by parameter name.",
    )


class GenerateResponse(BaseModel):
    """Response body for ``POST /api/ai/generate``.

    Attributes:
        tile_id: Identifier of the caller's tile.
        image_url: Where the image can be fetched.
        title: Rendered tile title.
        cached: ``True`` when an existing image was reused.
    """

    model_config = ConfigDict(populate_by_name=True)

    tile_id: str = Field(..., alias="tileId")
    image_url: str = Field(..., alias="imageUrl")
    title: str
    cached: bool = False
