import pytest

from conftest import INTERNAL_KEY
from shared.errors import ForbiddenError
from shared.security import Actor, create_access_token, ensure_owner, verify_access_token, verify_api_key


def test_internal_key_check():
    assert verify_api_key(INTERNAL_KEY)
    assert not verify_api_key("wrong")
    assert not verify_api_key(None)


def test_token_carries_role():
    payload = verify_access_token(create_access_token({"sub": "cust-1"}))
    assert payload["sub"] == "cust-1"
    assert payload["role"] == "customer"
    assert verify_access_token("not-a-token") is None


def test_ownership():
    ensure_owner(Actor("cust-1"), "cust-1")
    ensure_owner(Actor("admin-1", role="admin"), "cust-1")
    with pytest.raises(ForbiddenError):
        ensure_owner(Actor("cust-2"), "cust-1")
    with pytest.raises(ForbiddenError):
        ensure_owner(Actor("seller-a", role="seller"), "cust-1")
