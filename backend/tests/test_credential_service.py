import os

import pytest

from patchdeploy.core.errors import CredentialResolutionError
from patchdeploy.models.deployment import Platform
from patchdeploy.services.credential_service import CredentialVault, missing_fields


@pytest.fixture
def vault(tmp_path):
    return CredentialVault(encryption_key="test-secret", credentials_dir=str(tmp_path))


@pytest.mark.asyncio
async def test_store_and_resolve(vault, tmp_path):
    metadata = await vault.store("acme/ftp", {"username": "deploy", "password": "s3cret"})

    assert metadata["credential_ref"] == "acme/ftp"
    assert "password" not in metadata
    assert await vault.resolve("acme/ftp") == {"username": "deploy", "password": "s3cret"}

    stored = (tmp_path / "acme_ftp.cred").read_bytes()
    assert b"s3cret" not in stored


@pytest.mark.asyncio
async def test_wrong_key_cannot_decrypt(vault, tmp_path):
    await vault.store("acme", {"access_token": "token"})
    other = CredentialVault(encryption_key="another-secret", credentials_dir=str(tmp_path))

    with pytest.raises(CredentialResolutionError) as exc_info:
        await other.resolve("acme")
    assert "cannot be decrypted" in str(exc_info.value)


@pytest.mark.asyncio
async def test_environment_fallback(monkeypatch, tmp_path):
    monkeypatch.setenv("PATCHDEPLOY_CRED_SHOP_1", '{"access_token": "shpat_env", "port": 22}')
    vault = CredentialVault(encryption_key=None, credentials_dir=str(tmp_path))

    assert await vault.resolve("shop-1") == {"access_token": "shpat_env", "port": "22"}


@pytest.mark.asyncio
async def test_invalid_environment_value(monkeypatch, tmp_path):
    vault = CredentialVault(encryption_key=None, credentials_dir=str(tmp_path))

    monkeypatch.setenv("PATCHDEPLOY_CRED_BROKEN", "not json")
    with pytest.raises(CredentialResolutionError):
        await vault.resolve("broken")

    monkeypatch.setenv("PATCHDEPLOY_CRED_BROKEN", '["a list"]')
    with pytest.raises(CredentialResolutionError):
        await vault.resolve("broken")


@pytest.mark.asyncio
async def test_unknown_reference(vault):
    with pytest.raises(CredentialResolutionError) as exc_info:
        await vault.resolve("nobody")
    assert "not found" in str(exc_info.value)


@pytest.mark.asyncio
async def test_store_needs_encryption_key(tmp_path):
    vault = CredentialVault(encryption_key=None, credentials_dir=str(tmp_path))

    with pytest.raises(CredentialResolutionError):
        await vault.store("acme", {"access_token": "token"})
    assert os.listdir(tmp_path) == []


@pytest.mark.asyncio
async def test_delete(vault):
    await vault.store("acme", {"access_token": "token"})

    assert await vault.delete("acme")
    assert not await vault.delete("acme")


@pytest.mark.asyncio
async def test_validate(vault):
    await vault.store("ssh", {"username": "deploy"})

    problems = await vault.validate("ssh", Platform.SHELL_SESSION)
    assert len(problems) == 1
    assert "private_key" in problems[0]
    assert await vault.validate("missing", Platform.CMS_API) != []


def test_missing_fields():
    assert missing_fields(Platform.CMS_API, {"access_token": "t"}) == []
    assert missing_fields(Platform.CMS_API, {"username": "u", "password": "p"}) == []
    assert missing_fields(Platform.FILE_TRANSFER, {"username": "u"}) == ["password"]
    assert missing_fields(Platform.SHELL_SESSION, {}) == ["username", "private_key"]
