"""
Unit tests for the authenticated user schema
"""
import warnings
from types import SimpleNamespace

from src.auth.schemas import TokenUser


class TestTokenUser:

    def test_builds_from_attributes(self):
        row = SimpleNamespace(id="alice", email="alice@example.com", full_name="Alice", is_verified=True)

        user = TokenUser.model_validate(row)

        assert user.id == "alice"
        assert user.full_name == "Alice"
        assert user.is_verified is True
        assert user.token_type == "bearer"

    def test_schema_uses_current_pydantic_config(self):
        assert TokenUser.model_config["from_attributes"] is True

        with warnings.catch_warnings():
            warnings.simplefilter("error")

            class VerifiedUser(TokenUser):
                is_verified: bool = True

        assert VerifiedUser(id="bob").is_verified is True
