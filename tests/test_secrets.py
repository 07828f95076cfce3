import pytest
from cryptography.fernet import Fernet

from thinkspace.pipeline.errors import CredentialMissingError
from thinkspace.services.secrets import SecretsService


@pytest.fixture
def secrets(session_factory):
    return SecretsService(session_factory, server_key="sk-server", encryption_key=Fernet.generate_key().decode())


async def test_server_key_without_byok(secrets):
    assert await secrets.resolve_credential("user-1", used_byok=False) == "sk-server"


async def test_missing_server_key(session_factory):
    secrets = SecretsService(session_factory, server_key="", encryption_key="")
    with pytest.raises(CredentialMissingError):
        await secrets.resolve_credential("user-1", used_byok=False)


async def test_byok_round_trip_through_the_database(secrets):
    await secrets.set_user_key("user-1", "sk-or-user")

    assert await secrets.has_user_key("user-1") is True
    assert await secrets.resolve_credential("user-1", used_byok=True) == "sk-or-user"

    account = await secrets.get_account("user-1")
    assert account.openrouter_key_encrypted != "sk-or-user"


async def test_byok_without_stored_key(secrets):
    with pytest.raises(CredentialMissingError):
        await secrets.resolve_credential("user-2", used_byok=True)


async def test_key_encrypted_with_another_secret_is_rejected(session_factory, secrets):
    await secrets.set_user_key("user-1", "sk-or-user")
    rotated = SecretsService(session_factory, server_key="sk-server", encryption_key=Fernet.generate_key().decode())

    with pytest.raises(CredentialMissingError):
        await rotated.resolve_credential("user-1", used_byok=True)


async def test_delete_key_and_default_tier(secrets):
    assert await secrets.get_subscription_tier("user-1") == "free"
    await secrets.set_user_key("user-1", "sk-or-user")

    assert await secrets.delete_user_key("user-1") is True
    assert await secrets.delete_user_key("user-1") is False
    assert await secrets.has_user_key("user-1") is False
