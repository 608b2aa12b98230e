"""OpenAPI Schema Validation Tests.

Validates that the FastAPI-generated OpenAPI schema is valid and complete.
"""

import pytest
from openapi_spec_validator import validate
from openapi_spec_validator.exceptions import OpenAPISpecValidatorError


class TestOpenAPISchemaValidity:
    """Tests for OpenAPI schema validity."""

    def test_schema_is_valid_openapi_3(self, openapi_schema):
        """Schema conforms to OpenAPI 3.x specification."""
        try:
            validate(openapi_schema)
        except OpenAPISpecValidatorError as e:
            pytest.fail(f"OpenAPI schema validation failed: {e}")

    def test_schema_has_required_info(self, openapi_schema):
        """Schema has required info section with title and version."""
        assert openapi_schema["info"]["title"] == "Billing Dashboard API"
        assert openapi_schema["info"]["version"] == "0.1.0"

    def test_all_endpoints_documented(self, openapi_schema):
        """All expected endpoints are present in schema."""
        expected = {
            "/": ["get"],
            "/health": ["get"],
            "/ready": ["get"],
            "/users": ["post"],
            "/users/me": ["get"],
            "/payment-methods": ["get"],
            "/payment-methods/contracts": ["post"],
            "/payment-methods/contracts/banks": ["get"],
            "/payment-methods/contracts/status": ["get"],
            "/payment-methods/contracts/callback": ["get"],
            "/payment-methods/contracts/recover": ["post"],
            "/payment-methods/contracts/{contract_id}/verify": ["post"],
            "/payment-methods/contracts/{payment_method_id}": ["delete"],
            "/payment-methods/{payment_method_id}/default": ["patch"],
        }
        paths = openapi_schema.get("paths", {})
        for path, methods in expected.items():
            assert path in paths, f"Missing endpoint: {path}"
            for method in methods:
                assert method in paths[path], f"Missing {method.upper()} {path}"

    def test_endpoints_have_operation_ids(self, openapi_schema):
        """All operations have unique operationIds."""
        operation_ids = set()
        for path, methods in openapi_schema.get("paths", {}).items():
            for method, details in methods.items():
                if method in ["get", "post", "put", "delete", "patch"]:
                    op_id = details.get("operationId")
                    assert op_id, f"Missing operationId for {method.upper()} {path}"
                    assert op_id not in operation_ids, f"Duplicate operationId: {op_id}"
                    operation_ids.add(op_id)

    def test_post_endpoints_have_request_body(self, openapi_schema):
        """POST endpoints define their request body schemas."""
        post_endpoints = [
            "/users",
            "/payment-methods/contracts",
            "/payment-methods/contracts/recover",
            "/payment-methods/contracts/{contract_id}/verify",
        ]
        for endpoint in post_endpoints:
            post_info = openapi_schema["paths"].get(endpoint, {}).get("post", {})
            assert "requestBody" in post_info, f"Missing requestBody for POST {endpoint}"
            assert "application/json" in post_info["requestBody"]["content"]

    def test_callback_takes_query_parameters(self, openapi_schema):
        """The bank redirect carries its data in the query string."""
        get_info = openapi_schema["paths"]["/payment-methods/contracts/callback"]["get"]
        params = {p["name"]: p for p in get_info["parameters"] if p["in"] == "query"}
        assert params["payman_authority"]["required"] is True
        assert params["status"]["required"] is True

    def test_endpoints_have_response_schemas(self, openapi_schema):
        """All endpoints define their response schemas."""
        for path, methods in openapi_schema.get("paths", {}).items():
            for method, details in methods.items():
                if method in ["get", "post", "put", "delete", "patch"]:
                    responses = details.get("responses", {})
                    has_success = any(code.startswith("2") for code in responses.keys())
                    assert has_success, f"Missing success response for {method.upper()} {path}"

    def test_authenticated_endpoints_declare_session_header(self, openapi_schema):
        security_schemes = openapi_schema.get("components", {}).get("securitySchemes", {})
        header_schemes = [s for s in security_schemes.values() if s.get("in") == "header"]
        assert any(s["name"] == "X-Session-Token" for s in header_schemes)

        create = openapi_schema["paths"]["/payment-methods/contracts"]["post"]
        assert create.get("security"), "contract creation should require a session"

    def test_schema_component_definitions(self, openapi_schema):
        """Required schema components are defined."""
        expected_schemas = [
            "BankResponse",
            "BankListResponse",
            "CreateContractRequest",
            "CreateContractResponse",
            "VerifyContractRequest",
            "VerifyContractResponse",
            "CancelContractResponse",
            "ContractCallbackResponse",
            "RecoverContractRequest",
            "RecoverContractResponse",
            "ContractStatusResponse",
            "PaymentMethodResponse",
            "PaymentMethodList",
            "SetDefaultResponse",
            "UserCreate",
            "UserResponse",
        ]
        schemas = openapi_schema.get("components", {}).get("schemas", {})
        for expected in expected_schemas:
            assert expected in schemas, f"Missing schema definition: {expected}"

    def test_create_contract_request_complete(self, openapi_schema):
        schemas = openapi_schema["components"]["schemas"]
        request = schemas["CreateContractRequest"]

        assert set(request["required"]) == {
            "mobile", "expire_at", "max_daily_count", "max_monthly_count", "max_amount",
        }
        assert "national_id" in request["properties"]

    def test_payment_method_hides_signature(self, openapi_schema):
        """The encrypted signature never appears in a response schema."""
        properties = openapi_schema["components"]["schemas"]["PaymentMethodResponse"]["properties"]
        assert "contract_signature_encrypted" not in properties
        assert "contract_signature_hash" not in properties
        assert "payman_authority" not in properties

    def test_callback_response_has_no_signature(self, openapi_schema):
        properties = openapi_schema["components"]["schemas"]["ContractCallbackResponse"]["properties"]
        assert "signature" not in properties
        assert {"success", "persisted", "payment_method_id", "message"} <= set(properties)

    def test_error_schemas_defined(self, openapi_schema):
        """Error envelopes are documented on the payment method routes."""
        schemas = openapi_schema["components"]["schemas"]
        assert "error" in schemas["ErrorResponse"]["properties"]
        assert "errors" in schemas["ValidationErrorResponse"]["properties"]

        responses = openapi_schema["paths"]["/payment-methods/contracts"]["post"]["responses"]
        assert {"401", "422", "502"} <= set(responses)
