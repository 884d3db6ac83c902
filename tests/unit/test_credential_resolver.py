"""
Unit tests for credential storage and resolution
"""
from datetime import timedelta

import pytest

from marketplace_bridge.database.connection import session_scope
from marketplace_bridge.database.models import ConnectionState, TenantCredential, utcnow
from marketplace_bridge.services.credential_resolver import (
    CredentialResolver,
    SOURCE_GLOBAL,
    SOURCE_TENANT,
)
from marketplace_bridge.utils.exceptions import (
    CredentialsNotConfigured,
    MalformedCiphertext,
    MigrationRequired,
    NotConnected,
)


@pytest.fixture
def write_raw_record(session_factory):
    """Insert a credential row bypassing the store's validation"""

    def _write(tenant_id: str, **columns) -> None:
        with session_scope(session_factory) as db:
            db.add(TenantCredential(tenant_id=tenant_id,
                                    connection_status=ConnectionState.CONNECTED,
                                    **columns))

    return _write


class TestCredentialStore:
    """Test persistence of tenant credentials"""

    def test_get_unknown_tenant(self, store):
        """Test that unknown tenants have no snapshot"""
        assert store.get("nobody") is None

    def test_save_app_credentials(self, store, vault):
        """Test storing app credentials creates a disconnected record"""
        snapshot = store.save_app_credentials("t1", "app-1", vault.encrypt("secret"))

        assert snapshot.app_id == "app-1"
        assert snapshot.has_app_credentials
        assert snapshot.connection_status == ConnectionState.DISCONNECTED
        assert snapshot.refresh_token_encrypted is None
        assert vault.decrypt(store.get("t1").app_secret_encrypted) == "secret"

    def test_rejects_plaintext_secret(self, store):
        """Test that secrets must arrive encrypted"""
        with pytest.raises(ValueError):
            store.save_app_credentials("t1", "app-1", "plaintext")
        with pytest.raises(ValueError):
            store.save_authorization("t1", "plaintext-refresh-token")

    def test_save_authorization_connects(self, store, vault):
        """Test that storing a refresh token marks the tenant connected"""
        snapshot = store.save_authorization("t1", vault.encrypt("rt"), "seller")

        assert snapshot.connection_status == ConnectionState.CONNECTED
        assert snapshot.marketplace_user_id == "seller"
        assert snapshot.connected_at is not None

    def test_disconnect_keeps_app_credentials(self, store, connect_tenant):
        """Test that disconnect clears authorization only"""
        connect_tenant("t1")

        assert store.disconnect("t1") is True

        snapshot = store.get("t1")
        assert snapshot.connection_status == ConnectionState.DISCONNECTED
        assert snapshot.refresh_token_encrypted is None
        assert snapshot.marketplace_user_id is None
        assert snapshot.connected_at is None
        assert snapshot.app_id == "tenant-app"
        assert snapshot.app_secret_encrypted

    def test_disconnect_unknown_tenant(self, store):
        """Test disconnecting a tenant without a record"""
        assert store.disconnect("nobody") is False

    def test_mark_expired(self, store, connect_tenant):
        """Test that expiry drops the refresh token"""
        connect_tenant("t1")

        store.mark_expired("t1")

        snapshot = store.get("t1")
        assert snapshot.connection_status == ConnectionState.EXPIRED
        assert snapshot.refresh_token_encrypted is None
        assert snapshot.app_id == "tenant-app"

    def test_oauth_state_is_single_use(self, store):
        """Test that a pending state can be consumed once"""
        store.save_oauth_state("state-1", "t1", "verifier-1")

        tenant_id, verifier, created_at = store.pop_oauth_state("state-1")

        assert tenant_id == "t1"
        assert verifier == "verifier-1"
        assert created_at is not None
        assert store.pop_oauth_state("state-1") is None

    def test_purge_oauth_states(self, store):
        """Test that old states are purged"""
        store.save_oauth_state("old", "t1", "v1")

        assert store.purge_oauth_states(utcnow() + timedelta(seconds=1)) == 1
        assert store.pop_oauth_state("old") is None


class TestCredentialResolver:
    """Test credential precedence and failure modes"""

    def test_tenant_credentials_win(self, store, vault, global_config, connect_tenant):
        """Test that tenant credentials are preferred over global ones"""
        connect_tenant("t1", refresh_token="rt-1")
        resolver = CredentialResolver(store, vault, global_config)

        credentials = resolver.resolve("t1")

        assert credentials.app_id == "tenant-app"
        assert credentials.app_secret == "tenant-secret"
        assert credentials.refresh_token == "rt-1"
        assert credentials.source == SOURCE_TENANT
        assert credentials.marketplace_user_id == "seller_one"

    def test_global_fallback(self, store, vault, global_config, connect_tenant):
        """Test global credentials when the tenant has none of its own"""
        connect_tenant("t1", app_id=None)
        resolver = CredentialResolver(store, vault, global_config)

        credentials = resolver.resolve("t1")

        assert credentials.app_id == "global-app"
        assert credentials.app_secret == "global-secret"
        assert credentials.source == SOURCE_GLOBAL

    def test_no_credentials_anywhere(self, store, vault, config):
        """Test that missing credentials at every tier are reported"""
        resolver = CredentialResolver(store, vault, config)

        with pytest.raises(CredentialsNotConfigured) as exc_info:
            resolver.resolve("t1")

        assert exc_info.value.action == "CONFIGURE_CREDENTIALS"
        assert exc_info.value.tenant_id == "t1"

    def test_not_connected(self, store, vault, config):
        """Test a tenant with app credentials but no refresh token"""
        store.save_app_credentials("t1", "app", vault.encrypt("secret"))
        resolver = CredentialResolver(store, vault, config)

        with pytest.raises(NotConnected) as exc_info:
            resolver.resolve("t1")

        assert exc_info.value.action == "AUTHORIZE"

    def test_not_connected_with_global_credentials(self, store, vault, global_config):
        """Test an unknown tenant under operator-wide credentials"""
        resolver = CredentialResolver(store, vault, global_config)

        with pytest.raises(NotConnected):
            resolver.resolve("t1")

    def test_resolve_app_credentials_without_token(self, store, vault, config):
        """Test resolving app credentials alone for the authorization flow"""
        store.save_app_credentials("t1", "app", vault.encrypt("secret"))
        resolver = CredentialResolver(store, vault, config)

        app = resolver.resolve_app_credentials("t1")

        assert (app.app_id, app.app_secret, app.source) == ("app", "secret", SOURCE_TENANT)

    def test_unreadable_tenant_secret_does_not_fall_back(self, store, vault, global_config,
                                                         write_raw_record):
        """Test that a malformed tenant secret is an error, not a global fallback"""
        write_raw_record("t1", app_id="tenant-app", app_secret_encrypted="deadbeef",
                         refresh_token_encrypted=vault.encrypt("rt"))
        resolver = CredentialResolver(store, vault, global_config)

        with pytest.raises(MalformedCiphertext):
            resolver.resolve("t1")
        with pytest.raises(MalformedCiphertext):
            resolver.resolve_app_credentials("t1")

    def test_legacy_refresh_token_needs_migration(self, store, vault, config, write_raw_record):
        """Test that legacy refresh tokens surface a migration error"""
        write_raw_record("t1", app_id="tenant-app",
                         app_secret_encrypted=vault.encrypt("secret"),
                         refresh_token_encrypted="NEEDS_MIGRATION:legacy-token")
        resolver = CredentialResolver(store, vault, config)

        with pytest.raises(MigrationRequired) as exc_info:
            resolver.resolve("t1")

        assert exc_info.value.action == "DISCONNECT_AND_RECONNECT"

    def test_secrets_hidden_from_repr(self, store, vault, config, connect_tenant):
        """Test that decrypted secrets are not exposed through repr"""
        connect_tenant("t1", refresh_token="rt-secret")
        credentials = CredentialResolver(store, vault, config).resolve("t1")

        assert "tenant-secret" not in repr(credentials)
        assert "rt-secret" not in repr(credentials)
