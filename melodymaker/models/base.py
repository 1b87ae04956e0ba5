"""Wire-format base for API models: snake_case in Python, camelCase in JSON."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base for every MelodyMaker request and response body.

    The web client speaks camelCase (``previewUrl``, ``audioFeatures``,
    ``fileUrl``).  Input accepts either spelling; output is camelCase when
    dumped with ``by_alias=True``, which the routers request through
    ``response_model_by_alias``.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )
