"""API credential resolution per bot, with a TTL cache.

Resolution order: the bot's own key, then the global key if the bot allows
fallback, otherwise a CredentialError. Failures are never cached.
"""
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import structlog

from plugrag import config
from plugrag.exceptions import BotNotFoundError, ConfigurationError, CredentialError

logger = structlog.get_logger()


@dataclass(frozen=True)
class Credential:
    """An API key plus the models to use it with."""

    api_key: str
    is_custom: bool
    source: str
    chat_model: str
    embedding_model: str

    @property
    def fingerprint(self) -> str:
        """Short non-secret identifier of the key, for logs and cache checks."""
        return f"...{self.api_key[-4:]}" if len(self.api_key) > 8 else "***"


class TenantStore(Protocol):
    """Bot ownership and status lookup."""

    def get_bot(self, bot_id: str) -> Optional[Dict[str, Any]]:
        ...


class CredentialCache:
    """Per-(bot, tenant) credential cache with a time-to-live.

    Entries are only ever inserted whole or removed; an expired entry is
    dropped on read and replaced by the next resolution.
    """

    def __init__(self, ttl: float = None, clock: Callable[[], float] = time.monotonic):
        self.ttl = config.CREDENTIAL_CACHE_TTL if ttl is None else ttl
        self._clock = clock
        self._entries: Dict[Tuple[str, str], Tuple[float, Credential]] = {}

    def get(self, bot_id: str, tenant_id: str) -> Optional[Credential]:
        key = (bot_id, tenant_id)
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, credential = entry
        if self._clock() - stored_at > self.ttl:
            self._entries.pop(key, None)
            return None
        return credential

    def put(self, bot_id: str, tenant_id: str, credential: Credential) -> None:
        self._entries[(bot_id, tenant_id)] = (self._clock(), credential)

    def invalidate(self, bot_id: str, tenant_id: Optional[str] = None) -> None:
        """Drop cached credentials for a bot (all tenants if tenant_id is None)."""
        for key in list(self._entries):
            if key[0] == bot_id and (tenant_id is None or key[1] == tenant_id):
                self._entries.pop(key, None)


class CredentialResolver:
    """Resolves which API key and models a bot uses."""

    def __init__(
        self,
        tenants: TenantStore,
        global_api_key: Optional[str] = None,
        cache: Optional[CredentialCache] = None,
        default_chat_model: str = None,
        default_embedding_model: str = None,
    ):
        """Initialize the resolver.

        Args:
            tenants: Store answering bot ownership lookups
            global_api_key: Fallback key (default config.OPENAI_API_KEY)
            cache: Credential cache (a private one is created if omitted)
            default_chat_model: Chat model when the bot sets none
            default_embedding_model: Embedding model when the bot sets none
        """
        self.tenants = tenants
        self.global_api_key = config.OPENAI_API_KEY if global_api_key is None else global_api_key
        self.cache = cache or CredentialCache()
        self.default_chat_model = default_chat_model or config.CHAT_MODEL
        self.default_embedding_model = default_embedding_model or config.EMBEDDING_MODEL

    def resolve_owner(self, bot_id: str) -> str:
        """Owner of an active bot.

        Raises:
            BotNotFoundError: If the bot does not exist
            ConfigurationError: If the bot is not active
        """
        bot = self.tenants.get_bot(bot_id)
        if not bot:
            raise BotNotFoundError(f"Bot not found: {bot_id}")
        if bot.get("status", "active") != "active":
            raise ConfigurationError(f"Bot is not active: {bot_id}")
        return bot["owner_id"]

    def resolve(self, bot_id: str, owner_id: str) -> Credential:
        """Resolve the credential a bot's owner has configured.

        Raises:
            BotNotFoundError: If the bot is unknown or owned by someone else
            CredentialError: If neither a bot key nor a permitted global key exists
        """
        cached = self.cache.get(bot_id, owner_id)
        if cached is not None:
            return cached

        bot = self.tenants.get_bot(bot_id)
        if not bot or bot.get("owner_id") != owner_id:
            raise BotNotFoundError("Bot not found or unauthorized")

        chat_model = bot.get("chat_model") or self.default_chat_model
        embedding_model = bot.get("embedding_model") or self.default_embedding_model

        if bot.get("api_key"):
            credential = Credential(
                api_key=bot["api_key"],
                is_custom=True,
                source="bot",
                chat_model=chat_model,
                embedding_model=embedding_model,
            )
        elif bot.get("fallback_to_global", True) and self.global_api_key:
            credential = Credential(
                api_key=self.global_api_key,
                is_custom=False,
                source="global",
                chat_model=chat_model,
                embedding_model=embedding_model,
            )
        else:
            logger.error("credential_unavailable", bot_id=bot_id, owner_id=owner_id)
            raise CredentialError(
                f"No API key available for bot {bot_id}: configure a bot key "
                "or allow fallback to the global key"
            )

        self.cache.put(bot_id, owner_id, credential)
        logger.info(
            "credential_resolved",
            bot_id=bot_id,
            source=credential.source,
            key=credential.fingerprint,
        )
        return credential
