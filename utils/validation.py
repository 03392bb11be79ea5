from flask import request
from pydantic import ValidationError as PydanticValidationError

from services.errors import ValidationError


def _field_errors(exc: PydanticValidationError) -> list:
    return [
        {
            "field": ".".join(str(part) for part in err["loc"]) or "body",
            "message": err["msg"],
        }
        for err in exc.errors()
    ]


def _validate(model, data: dict):
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError("Validation failed", details={"fields": _field_errors(exc)}) from exc


def parse_body(model, allow_empty: bool = False):
    data = request.get_json(silent=True)
    if data is None and allow_empty:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return _validate(model, data)


def parse_query(model):
    return _validate(model, request.args.to_dict())
