import pytest
from celf.config import settings
from celf.core.exceptions import InvalidReferral, ValidationError
from celf.models.user import UserRole
from celf.services.accounts import (
    generate_referral_code, generate_wallet_address, is_valid_wallet_address, provision_user,
)


def test_wallet_address_format():
    address = generate_wallet_address(1, "alice@celf.io")
    assert len(address) == 44
    assert is_valid_wallet_address(address)
    assert address != generate_wallet_address(1, "alice@celf.io")
    assert not is_valid_wallet_address("0x" + "a" * 40)
    assert not is_valid_wallet_address("celf" + "G" * 40)


def test_referral_code_format():
    code = generate_referral_code()
    assert code.startswith("CELF") and len(code) == 10


@pytest.mark.asyncio
async def test_provision_user(session_factory, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_EMAILS", "root@celf.io")
    async with session_factory() as db:
        user, wallet, referral = await provision_user(db, "  Root@CELF.io ")
        assert user.email == "root@celf.io"
        assert user.role == UserRole.admin
        assert wallet.user_id == user.id
        assert referral is None

        with pytest.raises(ValidationError):
            await provision_user(db, "root@celf.io")
        with pytest.raises(ValidationError):
            await provision_user(db, "not-an-email")
        with pytest.raises(InvalidReferral):
            await provision_user(db, "eve@celf.io", referral_code="CELFNOPE00")
