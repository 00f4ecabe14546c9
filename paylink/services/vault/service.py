"""Provider-config management on top of the credential vault.

This is the only place that turns `encrypted_credentials` back into plaintext,
and the plaintext only ever lives inside an adapter instance for the duration
of one operation.
"""

from sqlalchemy import exc as sa_exc
from sqlalchemy import select

from paylink.common.db import utcnow
from paylink.common.errors import NoActiveConfig, NotFound, NotOwner, ValidationFailed
from paylink.common.logging import logger
from paylink.providers.base import Provider, ProviderAdapter
from paylink.providers.registry import get_adapter, parse_provider
from paylink.services.vault.crypto import CredentialVault
from paylink.services.vault.models import ProviderConfig
from paylink.services.vault.schemas import (
    NON_SECRET_FIELDS,
    ProviderConfigCreate,
    ProviderConfigUpdate,
    VerifyResult,
    validate_credentials,
)


class ProviderConfigService:
    def __init__(self, session_factory, vault: CredentialVault, adapter_factory=get_adapter, http_client=None) -> None:
        self.session_factory = session_factory
        self.vault = vault
        self.adapter_factory = adapter_factory
        self.http_client = http_client

    def _owned(self, db, config_id: str, owner_id: str) -> ProviderConfig:
        config = db.get(ProviderConfig, config_id)
        if config is None:
            raise NotFound("provider config not found")
        if config.owner_id != owner_id:
            raise NotOwner("provider config belongs to another owner")
        return config

    def create_config(self, owner_id: str, req: ProviderConfigCreate) -> ProviderConfig:
        credentials = validate_credentials(req.provider, req.credentials)
        config = ProviderConfig(
            owner_id=owner_id,
            provider=req.provider.value,
            display_name=req.display_name,
            encrypted_credentials=self.vault.encrypt_credentials(credentials),
            is_test_mode=req.is_test_mode,
            is_active=req.is_active,
        )
        with self.session_factory() as db:
            db.add(config)
            try:
                db.commit()
            except sa_exc.IntegrityError:
                db.rollback()
                raise ValidationFailed(
                    f"a {req.provider.value} config named '{req.display_name}' already exists"
                ) from None
        logger.info("provider_config_created provider=%s config_id=%s", config.provider, config.id)
        return config

    def update_config(self, config_id: str, owner_id: str, req: ProviderConfigUpdate) -> ProviderConfig:
        with self.session_factory() as db:
            config = self._owned(db, config_id, owner_id)
            if req.display_name is not None:
                config.display_name = req.display_name
            if req.credentials is not None:
                credentials = validate_credentials(Provider(config.provider), req.credentials)
                config.encrypted_credentials = self.vault.encrypt_credentials(credentials)
                # New credentials have not been verified yet.
                config.last_verified_at = None
            if req.is_test_mode is not None:
                config.is_test_mode = req.is_test_mode
            if req.is_active is not None:
                config.is_active = req.is_active
            try:
                db.commit()
            except sa_exc.IntegrityError:
                db.rollback()
                raise ValidationFailed(f"a config named '{req.display_name}' already exists") from None
            return config

    def get_config(self, config_id: str, owner_id: str) -> ProviderConfig:
        with self.session_factory() as db:
            return self._owned(db, config_id, owner_id)

    def list_configs(self, owner_id: str, provider: str | None = None) -> list[ProviderConfig]:
        stmt = select(ProviderConfig).where(ProviderConfig.owner_id == owner_id)
        if provider is not None:
            stmt = stmt.where(ProviderConfig.provider == parse_provider(provider).value)
        with self.session_factory() as db:
            return list(db.execute(stmt.order_by(ProviderConfig.created_at.desc())).scalars())

    def delete_config(self, config_id: str, owner_id: str) -> None:
        with self.session_factory() as db:
            config = self._owned(db, config_id, owner_id)
            db.delete(config)
            db.commit()
        logger.info("provider_config_deleted config_id=%s", config_id)

    def resolve_active_config(
        self, owner_id: str, config_id: str | None = None, provider: str | None = None
    ) -> ProviderConfig:
        """Find the active config the owner wants to charge through, or raise `NoActiveConfig`.

        With only `provider`, the newest active config for that provider is used.
        """

        stmt = select(ProviderConfig).where(
            ProviderConfig.owner_id == owner_id,
            ProviderConfig.is_active.is_(True),
        )
        if config_id is not None:
            stmt = stmt.where(ProviderConfig.id == config_id)
        if provider is not None:
            stmt = stmt.where(ProviderConfig.provider == parse_provider(provider).value)
        if config_id is None and provider is None:
            raise NoActiveConfig("a provider config or provider is required")
        with self.session_factory() as db:
            config = db.execute(stmt.order_by(ProviderConfig.created_at.desc()).limit(1)).scalar_one_or_none()
        if config is None:
            raise NoActiveConfig("no active provider configuration", provider=provider, config_id=config_id)
        return config

    def build_adapter(self, config: ProviderConfig) -> ProviderAdapter:
        credentials = self.vault.decrypt_credentials(config.encrypted_credentials)
        return self.adapter_factory(
            config.provider, credentials, is_test_mode=config.is_test_mode, client=self.http_client
        )

    def adapter_for(self, config_id: str | None) -> ProviderAdapter | None:
        """Adapter for a stored config regardless of owner; None once the config is gone."""

        if config_id is None:
            return None
        with self.session_factory() as db:
            config = db.get(ProviderConfig, config_id)
        if config is None:
            return None
        return self.build_adapter(config)

    def verify_config(self, config_id: str, owner_id: str) -> VerifyResult:
        config = self.get_config(config_id, owner_id)
        valid = self.build_adapter(config).verify_credentials()
        verified_at = None
        if valid:
            verified_at = utcnow()
            with self.session_factory() as db:
                stored = db.get(ProviderConfig, config_id)
                if stored is not None:
                    stored.last_verified_at = verified_at
                    db.commit()
        logger.info("provider_config_verified config_id=%s valid=%s", config_id, valid)
        return VerifyResult(id=config_id, valid=valid, last_verified_at=verified_at)

    def decrypt_for_display(self, config_id: str, owner_id: str) -> dict[str, str]:
        """Non-secret credential fields (publishable keys, merchant ids) only."""

        config = self.get_config(config_id, owner_id)
        credentials = self.vault.decrypt_credentials(config.encrypted_credentials)
        allowed = NON_SECRET_FIELDS[Provider(config.provider)]
        return {field: credentials[field] for field in allowed if field in credentials}
