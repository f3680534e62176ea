from typing import Literal

from pydantic import BaseModel, ConfigDict


class ModelBase(BaseModel):
    """
    Base class for all snapshot-engine models.

    Enforces strict validation, forbids unknown fields,
    and enables assignment-time validation.
    """

    model_config = ConfigDict(
        extra="forbid",
        validate_assignment=True,
        frozen=False,
    )



ContentEncoding = Literal["utf-8", "base64"]
StorageType = Literal["memory", "sql"]
