from __future__ import annotations

import threading
from typing import Optional, Union

from keyward.config import Settings, get_settings, reset_settings_cache
from keyward.logging import get_logger
from keyward.service.accounts import AccountService
from keyward.service.codec import TokenCodec
from keyward.service.email import EmailService
from keyward.service.oauth import OAuthAdapter
from keyward.service.sessions import SessionManager
from keyward.service.two_factor import TwoFactorWorkflow
from keyward.service.verification import VerificationWorkflow
from keyward.storage.memory import MemoryStore
from keyward.storage.postgres import PostgresStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    encryption_key=self.settings.store_encryption_key,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    fs_root=self.settings.shared_fs_root,
                    encryption_key=self.settings.store_encryption_key,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error=str(exc),
                use_memory_store=self.settings.use_memory_store,
            )
            raise

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        if not self.email.is_configured:
            logger.warning("email_not_configured", mode="log_only")

        self.codec = TokenCodec.from_settings(self.settings)
        self.sessions = SessionManager(self.store, self.codec, self.settings)
        self.verification = VerificationWorkflow(self.store, self.email, self.settings)
        self.two_factor = TwoFactorWorkflow(
            self.store, self.sessions, self.settings, email=self.email
        )
        self.oauth = OAuthAdapter(self.store, self.sessions, self.settings)
        self.accounts = AccountService(self.store)

        logger.info(
            "runtime_initialized",
            store=type(self.store).__name__,
            email_configured=self.email.is_configured,
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent a race during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
