"""OpenAPI customization utilities.

The rate limit is enforced by middleware, so FastAPI cannot see it when
generating the schema. This module patches the generated document to:
- register the ``RateLimitExceeded`` response component
- attach a 429 response to every operation
- add tags metadata
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI

from app.core.rate_limit import RATE_LIMIT_EXCEEDED_MESSAGE
from app.schemas.rate_limit import RateLimitExceededResponse

_RATE_LIMIT_RESPONSE_REF = {"$ref": "#/components/responses/RateLimitExceeded"}

_HTTP_METHODS = {"get", "put", "post", "delete", "options", "head", "patch", "trace"}


def apply_openapi_customizations(app: FastAPI) -> None:
    """Patch FastAPI's OpenAPI generation to document the rate limit."""

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        schema = original_openapi()

        components = schema.setdefault("components", {})
        component_schemas = components.setdefault("schemas", {})
        component_schemas.setdefault(
            "RateLimitExceededResponse",
            RateLimitExceededResponse.model_json_schema(),
        )
        responses = components.setdefault("responses", {})
        responses.setdefault(
            "RateLimitExceeded",
            {
                "description": "Too many requests from this client within the window.",
                "content": {
                    "application/json": {
                        "schema": {"$ref": "#/components/schemas/RateLimitExceededResponse"},
                        "example": {"message": RATE_LIMIT_EXCEEDED_MESSAGE},
                    }
                },
            },
        )

        for methods in schema.get("paths", {}).values():
            for method, operation in methods.items():
                if method in _HTTP_METHODS and isinstance(operation, dict):
                    operation.setdefault("responses", {}).setdefault(
                        "429", dict(_RATE_LIMIT_RESPONSE_REF)
                    )

        tags = schema.setdefault("tags", [])
        existing_tag_names = {t.get("name") for t in tags}
        if "Health" not in existing_tag_names:
            tags.append({"name": "Health", "description": "Liveness and readiness checks."})

        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
