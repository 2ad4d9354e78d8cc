"""
Wire-strict base model.

Defaults on the models are there for building messages in code. A payload
read off the wire must spell out every field except the ones that default
to ``None``; decoding passes ``WIRE_CONTEXT`` to switch that check on.
"""

from typing import Any

from pydantic import BaseModel, ValidationInfo, model_validator

WIRE_CONTEXT = {"wire": True}


class WireModel(BaseModel):
    @model_validator(mode="before")
    @classmethod
    def _present_on_wire(cls, data: Any, info: ValidationInfo) -> Any:
        if not (info.context and info.context.get("wire")) or not isinstance(data, dict):
            return data
        missing = [
            field.alias or name
            for name, field in cls.model_fields.items()
            if (field.alias or name) not in data and not (field.default is None and field.default_factory is None)
        ]
        if missing:
            raise ValueError(f"missing on the wire: {', '.join(missing)}")
        return data
