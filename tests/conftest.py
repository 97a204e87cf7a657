import pytest
from sqlalchemy import create_engine

from usagesync.db.migrate import run_migrations
from usagesync.db.schema import member_identities, members, tenants, vendor_configs
from usagesync.utils.crypto import encrypt_credentials

TENANT_ID = "tenant-1"


@pytest.fixture()
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'usage.db'}",
        future=True,
        connect_args={"check_same_thread": False},
    )
    run_migrations(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def credential_key(monkeypatch):
    monkeypatch.setenv("CREDENTIAL_ENCRYPTION_KEY", "ab" * 32)
    monkeypatch.delenv("TENANT_SLUG", raising=False)


@pytest.fixture()
def seeded_engine(engine, credential_key):
    with engine.begin() as conn:
        conn.execute(tenants.insert(), {"id": TENANT_ID, "name": "Acme", "slug": "acme"})
        conn.execute(members.insert(), [
            {"id": "m-alice", "tenant_id": TENANT_ID, "name": "Alice", "email": "alice@acme.com"},
            {"id": "m-bob", "tenant_id": TENANT_ID, "name": "Bob", "email": "bob@acme.com"},
            {"id": "m-carol", "tenant_id": TENANT_ID, "name": "Carol", "email": "carol@acme.com"},
        ])
        conn.execute(member_identities.insert(), [
            {"id": "i-1", "member_id": "m-bob", "vendor": "cursor", "vendor_email": "bob.personal@gmail.com", "vendor_username": None},
            {"id": "i-2", "member_id": "m-carol", "vendor": "cursor", "vendor_email": None, "vendor_username": "CarolCodes"},
            {"id": "i-3", "member_id": "m-alice", "vendor": "openai", "vendor_email": "alice@openai-org.com", "vendor_username": None},
        ])
        conn.execute(vendor_configs.insert(), [
            {"id": "vc-cursor", "tenant_id": TENANT_ID, "vendor": "cursor", "encrypted_credentials": encrypt_credentials({"apiKey": "cursor-key"})},
            {"id": "vc-openai", "tenant_id": TENANT_ID, "vendor": "openai", "encrypted_credentials": encrypt_credentials({"adminApiKey": "sk-admin"})},
        ])
    return engine
