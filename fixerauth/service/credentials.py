from __future__ import annotations

from typing import List, Optional

from fixerauth.logging import get_logger
from fixerauth.service.clock import Clock, SystemClock
from fixerauth.service.errors import ValidationError
from fixerauth.service.passwords import SecretHasher, PlaintextHasher, verify_with_algo
from fixerauth.storage.common import AuthStore
from fixerauth.storage.models import Credential

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 6


class CredentialStore:
    """Registration and lookup of email/password credentials."""

    def __init__(
        self,
        store: AuthStore,
        *,
        hasher: Optional[SecretHasher] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher or PlaintextHasher()
        self.clock = clock or SystemClock()

    def find_by_email(self, email: str) -> Optional[Credential]:
        return self.store.get_credential_by_email(email)

    def exists_by_email(self, email: str) -> bool:
        return self.store.get_credential_by_email(email) is not None

    def list_for_user(self, user_id: int) -> List[Credential]:
        return self.store.list_user_credentials(user_id)

    def create(self, email: str, password: str, user_id: int) -> Credential:
        """Register a credential. Raises ``DuplicateEmail`` when the email is taken."""
        email = (email or "").strip()
        if not email or "@" not in email:
            raise ValidationError("invalid email", detail={"field": "email"})
        self.check_password(password)
        credential = self.store.create_credential(
            email,
            self.hasher.hash(password),
            user_id,
            password_algo=self.hasher.algo,
            created_at=self.clock.now(),
        )
        logger.info("credential_created", credential_id=credential.id, user_id=user_id)
        return credential

    def verify(self, email: str, password: str) -> Optional[Credential]:
        """Return the credential when email and password match an active record."""
        credential = self.store.get_credential_by_email(email)
        if not credential or not credential.is_active:
            return None
        if not verify_with_algo(credential.password, credential.password_algo, password):
            logger.warning("credential_verification_failed", credential_id=credential.id)
            return None
        if credential.password_algo != self.hasher.algo:
            # re-store under the configured scheme
            updated = self.store.update_credential_password(
                credential.id, self.hasher.hash(password), self.hasher.algo
            )
            if updated:
                logger.info(
                    "credential_rehashed",
                    credential_id=credential.id,
                    algo=self.hasher.algo,
                )
                credential = updated
        return credential

    def update_password(self, credential_id: int, password: str) -> Optional[Credential]:
        self.check_password(password)
        updated = self.store.update_credential_password(
            credential_id, self.hasher.hash(password), self.hasher.algo
        )
        if updated:
            logger.info("credential_password_updated", credential_id=credential_id)
        return updated

    def record_login(self, credential_id: int) -> None:
        self.store.record_credential_login(credential_id, self.clock.now())

    @staticmethod
    def check_password(password: str) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
