"""Tests for the authorization code exchange and provider error parsing."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest


class TestParseErrorBody:
    """Every provider error shape yields a non-empty (code, description)."""

    @pytest.mark.parametrize(
        "body, shape, code, description",
        [
            (
                {"error": "invalid_request", "error_description": "Code expired"},
                "oauth_error",
                "invalid_request",
                "Code expired",
            ),
            (
                {"errors": {"base": ["Shop is frozen", "Contact support"]}},
                "base_errors",
                "base",
                "Shop is frozen; Contact support",
            ),
            (
                {"errors": {"scope": ["is invalid"], "client_id": ["can't be blank"]}},
                "field_errors",
                "client_id,scope",
                "client_id: can't be blank; scope: is invalid",
            ),
            (
                {"message": "Too many requests", "code": "throttled"},
                "message",
                "throttled",
                "Too many requests",
            ),
            ({"detail": "Not allowed"}, "detail", "detail", "Not allowed"),
            ({"details": ["a", "b"]}, "detail", "details", "a; b"),
        ],
    )
    def test_known_shapes(self, body, shape, code, description):
        from shop_oauth.auth.token_exchange import parse_error_body

        detail = parse_error_body(body)
        assert detail.shape.value == shape
        assert detail.code == code
        assert detail.description == description

    def test_error_without_description_uses_code(self):
        from shop_oauth.auth.token_exchange import parse_error_body

        detail = parse_error_body({"error": "access_denied"})
        assert detail.code == "access_denied"
        assert detail.description == "access_denied"

    def test_message_without_code(self):
        from shop_oauth.auth.token_exchange import parse_error_body

        detail = parse_error_body({"message": "Bad"})
        assert detail.code == "message"

    @pytest.mark.parametrize(
        "body",
        [
            {"unexpected": {"nested": True}},
            {},
            [],
            ["just", "a", "list"],
            "<html>Bad Gateway</html>",
            "",
            "   ",
            None,
            42,
            b"\xff\xfe",
            {"errors": {}},
            {"error": ""},
            {"message": ""},
        ],
    )
    def test_unknown_shapes_never_empty(self, body):
        """Unrecognized bodies fall through to UNKNOWN with the raw body kept."""
        from shop_oauth.auth.token_exchange import ErrorShape, parse_error_body

        detail = parse_error_body(body)
        assert detail.shape is ErrorShape.UNKNOWN
        assert detail.code == "unknown_error"
        assert detail.description

    def test_unknown_shape_preserves_raw_body(self):
        from shop_oauth.auth.token_exchange import parse_error_body

        detail = parse_error_body({"weird": [1, 2]})
        assert detail.description == '{"weird": [1, 2]}'

        detail = parse_error_body("<html>Bad Gateway</html>")
        assert detail.description == "<html>Bad Gateway</html>"

    def test_shape_priority(self):
        """The OAuth error shape wins over a message in the same body."""
        from shop_oauth.auth.token_exchange import ErrorShape, parse_error_body

        detail = parse_error_body({"error": "invalid_client", "message": "ignored"})
        assert detail.shape is ErrorShape.OAUTH_ERROR

    @pytest.mark.parametrize(
        "description, expired",
        [
            ("The authorization code is invalid", True),
            ("Code has EXPIRED", True),
            ("The authorization code was already used", True),
            ("Shop is frozen", False),
        ],
    )
    def test_code_expired_flag(self, description, expired):
        from shop_oauth.auth.token_exchange import parse_error_body

        detail = parse_error_body({"error": "invalid_request", "error_description": description})
        assert detail.code_expired is expired


class TestTokenExchanger:
    """Tests for TokenExchanger.exchange."""

    def _mock_client(self, mock_client, status_code=200, json_body=None, text=""):
        mock_response = MagicMock()
        mock_response.status_code = status_code
        mock_response.is_success = 200 <= status_code < 300
        if json_body is None:
            mock_response.json.side_effect = ValueError("not json")
        else:
            mock_response.json.return_value = json_body
        mock_response.text = text

        mock_instance = AsyncMock()
        mock_instance.post.return_value = mock_response
        mock_instance.__aenter__.return_value = mock_instance
        mock_instance.__aexit__.return_value = None
        mock_client.return_value = mock_instance
        return mock_instance

    @pytest.mark.asyncio
    async def test_exchange_success(self, config):
        """Test token exchange with mocked HTTP."""
        from shop_oauth.auth.token_exchange import TokenExchanger

        with patch("httpx.AsyncClient") as mock_client:
            instance = self._mock_client(
                mock_client,
                json_body={"access_token": "shpat_test_token", "scope": "read_products"},
            )

            grant = await TokenExchanger(config).exchange("test.myshopify.com", "auth-code")

        assert grant.access_token == "shpat_test_token"
        assert grant.scope == "read_products"
        assert grant.expires_in is None

        instance.post.assert_called_once()
        args, kwargs = instance.post.call_args
        assert args[0] == "https://test.myshopify.com/admin/oauth/access_token"
        assert kwargs["json"] == {
            "client_id": "test-api-key",
            "client_secret": "test-api-secret",
            "code": "auth-code",
        }
        mock_client.assert_called_once_with(timeout=10.0)

    @pytest.mark.asyncio
    async def test_exchange_online_token(self, config):
        from shop_oauth.auth.token_exchange import TokenExchanger

        with patch("httpx.AsyncClient") as mock_client:
            self._mock_client(
                mock_client,
                json_body={
                    "access_token": "shpat_online",
                    "scope": "read_products",
                    "expires_in": 86399,
                    "associated_user_scope": "read_products",
                },
            )
            grant = await TokenExchanger(config).exchange("test.myshopify.com", "auth-code")

        assert grant.expires_in == 86399
        assert grant.associated_user_scope == "read_products"

    @pytest.mark.asyncio
    async def test_rejected_code(self, config):
        from shop_oauth.auth.errors import ProviderError
        from shop_oauth.auth.token_exchange import TokenExchanger

        with patch("httpx.AsyncClient") as mock_client:
            self._mock_client(
                mock_client,
                status_code=400,
                json_body={
                    "error": "invalid_request",
                    "error_description": "authorization code was not found or was already used",
                },
            )
            with pytest.raises(ProviderError) as exc_info:
                await TokenExchanger(config).exchange("test.myshopify.com", "used-code")

        error = exc_info.value
        assert error.provider_code == "invalid_request"
        assert error.code_expired is True
        assert error.code == "AUTH_CODE_EXPIRED"
        assert error.http_status == 400
        assert error.status_code == 502

    @pytest.mark.asyncio
    async def test_non_json_error_body(self, config):
        from shop_oauth.auth.errors import ProviderError
        from shop_oauth.auth.token_exchange import TokenExchanger

        with patch("httpx.AsyncClient") as mock_client:
            self._mock_client(mock_client, status_code=503, text="<html>Service Unavailable</html>")
            with pytest.raises(ProviderError) as exc_info:
                await TokenExchanger(config).exchange("test.myshopify.com", "code")

        assert exc_info.value.provider_code == "unknown_error"
        assert exc_info.value.description == "<html>Service Unavailable</html>"
        assert exc_info.value.code == "PROVIDER_ERROR"

    @pytest.mark.asyncio
    async def test_success_without_token_is_provider_error(self, config):
        from shop_oauth.auth.errors import ProviderError
        from shop_oauth.auth.token_exchange import TokenExchanger

        with patch("httpx.AsyncClient") as mock_client:
            self._mock_client(mock_client, json_body={"scope": "read_products"})
            with pytest.raises(ProviderError):
                await TokenExchanger(config).exchange("test.myshopify.com", "code")

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, config):
        from shop_oauth.auth.errors import TransientError
        from shop_oauth.auth.token_exchange import TokenExchanger

        with patch("httpx.AsyncClient") as mock_client:
            instance = self._mock_client(mock_client)
            instance.post.side_effect = httpx.ReadTimeout("timed out")

            with pytest.raises(TransientError) as exc_info:
                await TokenExchanger(config).exchange("test.myshopify.com", "code")

        assert isinstance(exc_info.value.__cause__, httpx.ReadTimeout)
        # Single-use code: exactly one attempt
        assert instance.post.call_count == 1

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, config):
        from shop_oauth.auth.errors import TransientError
        from shop_oauth.auth.token_exchange import TokenExchanger

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        exchanger = TokenExchanger(config, transport=httpx.MockTransport(refuse))
        with pytest.raises(TransientError) as exc_info:
            await exchanger.exchange("test.myshopify.com", "code")

        assert exc_info.value.status_code == 503
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_empty_inputs(self, config):
        from shop_oauth.auth.errors import ValidationError
        from shop_oauth.auth.token_exchange import TokenExchanger

        exchanger = TokenExchanger(config)
        with pytest.raises(ValidationError):
            await exchanger.exchange("", "code")
        with pytest.raises(ValidationError):
            await exchanger.exchange("test.myshopify.com", "")

    @pytest.mark.asyncio
    async def test_missing_credentials(self, config):
        from shop_oauth.auth.errors import ConfigurationError
        from shop_oauth.auth.token_exchange import TokenExchanger

        config.api_secret = ""
        with pytest.raises(ConfigurationError):
            await TokenExchanger(config).exchange("test.myshopify.com", "code")

    def test_grant_repr_masks_token(self):
        from shop_oauth.auth.token_exchange import TokenGrant

        grant = TokenGrant(access_token="shpat_very_secret_value", scope="read_products")
        assert "shpat_very_secret_value" not in repr(grant)
        assert "shpa..." in repr(grant)
