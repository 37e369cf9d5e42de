"""
API Documentation utilities and enhanced OpenAPI configuration
"""
from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi
from typing import Dict, Any

ERROR_RESPONSE_SCHEMA = {
    "type": "object",
    "required": ["success", "error", "timestamp"],
    "properties": {
        "success": {"type": "boolean", "example": False},
        "error": {
            "type": "object",
            "required": ["code", "message"],
            "properties": {
                "code": {"type": "string", "example": "BELOW_MINIMUM_PURCHASE"},
                "message": {"type": "string", "example": "Minimum purchase is 100 CHESS"},
                "field": {"type": "string", "example": "tokenAmount"},
                "context": {"type": "object"}
            }
        },
        "timestamp": {"type": "number", "example": 1699123456.789},
        "trace_id": {"type": "string", "example": "abc123def456"},
        "request_id": {"type": "string"}
    }
}

def _error_response(description: str) -> Dict[str, Any]:
    return {
        "description": description,
        "content": {"application/json": {"schema": {"$ref": "#/components/schemas/ErrorResponse"}}}
    }

def create_custom_openapi(app: FastAPI, title: str, version: str, description: str) -> Dict[str, Any]:
    """OpenAPI schema with the shared error envelope and auth schemes attached"""

    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=title,
        version=version,
        description=description,
        routes=app.routes,
    )

    components = openapi_schema.setdefault("components", {})
    components["securitySchemes"] = {
        "operatorAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
            "description": "Operator JWT (audience `operator`) for reconciliation endpoints"
        },
        "webhookSecret": {
            "type": "apiKey",
            "in": "header",
            "name": "X-Telegram-Bot-Api-Secret-Token",
            "description": "Secret token the bot platform echoes on every webhook call"
        }
    }
    components.setdefault("schemas", {})["ErrorResponse"] = ERROR_RESPONSE_SCHEMA

    standard_responses = {
        "400": _error_response("Bad Request"),
        "404": _error_response("Not Found"),
        "409": _error_response("Conflict"),
        "429": _error_response("Rate Limit Exceeded"),
        "500": _error_response("Internal Server Error"),
        "502": _error_response("External Service Error"),
    }
    for path_item in openapi_schema["paths"].values():
        for operation in path_item.values():
            if isinstance(operation, dict) and "responses" in operation:
                for status, response in standard_responses.items():
                    operation["responses"].setdefault(status, response)

    openapi_schema["tags"] = [
        {"name": "Payments", "description": "Quotes, orders, proofs and verification"},
        {"name": "Ledger", "description": "Balances, swaps and wallet links"},
        {"name": "Reconciliation", "description": "Operator queue of orphaned credits"},
        {"name": "Health", "description": "Service and dependency health"}
    ]

    app.openapi_schema = openapi_schema
    return app.openapi_schema

PAYMENTS_DOCS = """
## Token purchase

1. `GET /payments/quote` to preview the price, or go straight to
2. `POST /payments/orders` which fixes the quote and returns pay instructions:
   - **CHAIN_A_NATIVE / CHAIN_A_STABLE**: an unsigned transfer for the wallet to sign.
     Submit the resulting signature with `POST /payments/proof`.
   - **CHAIN_B_NATIVE**: a deep link carrying the order id as the transfer comment.
     The transfer is matched automatically.
   - **STARRED_INVOICE**: an invoice link. The platform's payment callback settles it.
3. Poll `GET /payments/orders/{orderId}` or trigger `POST /payments/verify`.

Each order is credited at most once, however often it is verified.
"""
