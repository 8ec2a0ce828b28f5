from __future__ import annotations

import asyncio
import logging
import sys
import uuid
from typing import Any, Dict, List

from .config import Settings
from .context.assembler import ContextAssembler
from .context.tokens import build_token_counter
from .engine import ConversationEngine
from .errors import ContextEngineError, user_facing_message
from .memory.factory import build_session_store
from .memory.indexer import EmbeddingIndexer
from .memory.janitor import MemoryJanitor
from .memory.locks import SessionLockTable
from .memory.semantic_index import QdrantSemanticIndex
from .providers.embeddings import OllamaEmbeddingClient, OpenAIEmbeddingClient
from .providers.gemini_client import GeminiClient
from .providers.ollama_chat_client import OllamaChatClient
from .providers.openai_compat_client import OpenAICompatibleClient
from .providers.router import ProviderPolicy, ProviderRouter, ProviderStateTable

logger = logging.getLogger("context_engine")

_OPENROUTER_HEADERS = {"X-Title": "context-engine"}


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_chat_clients(settings: Settings) -> Dict[str, Any]:
    clients: Dict[str, Any] = {}
    for provider_id in settings.provider_order:
        cfg = settings.providers[provider_id]
        if provider_id == "gemini":
            clients[provider_id] = GeminiClient(
                api_key=cfg.api_key,
                model=cfg.model,
                timeout_seconds=cfg.timeout_seconds,
                temperature=cfg.temperature,
                max_output_tokens=cfg.max_output_tokens,
                base_url=cfg.base_url,
            )
        elif provider_id == "ollama":
            clients[provider_id] = OllamaChatClient(
                base_url=cfg.base_url,
                model=cfg.model,
                timeout_seconds=cfg.timeout_seconds,
                temperature=cfg.temperature,
                max_output_tokens=cfg.max_output_tokens,
            )
        else:
            clients[provider_id] = OpenAICompatibleClient(
                provider_id,
                api_key=cfg.api_key,
                model=cfg.model,
                timeout_seconds=cfg.timeout_seconds,
                temperature=cfg.temperature,
                max_output_tokens=cfg.max_output_tokens,
                base_url=cfg.base_url,
                extra_headers=_OPENROUTER_HEADERS if provider_id == "openrouter" else None,
            )
    return clients


def build_provider_states(settings: Settings) -> ProviderStateTable:
    policies = {
        provider_id: ProviderPolicy(
            degraded_after=cfg.degraded_after,
            unavailable_after=cfg.unavailable_after,
            backoff_base_seconds=cfg.backoff_base_seconds,
            backoff_max_seconds=cfg.backoff_max_seconds,
            timeout_seconds=cfg.timeout_seconds,
        )
        for provider_id, cfg in settings.providers.items()
    }
    return ProviderStateTable(settings.provider_order, policies)


def build_embedder(settings: Settings) -> Any:
    if settings.embedding_backend == "openai":
        return OpenAIEmbeddingClient(
            api_key=settings.embedding_api_key,
            model=settings.embedding_model,
            base_url=settings.embedding_base_url,
            timeout_seconds=settings.embedding_timeout_seconds,
        )
    return OllamaEmbeddingClient(
        base_url=settings.embedding_base_url,
        model=settings.embedding_model,
        timeout_seconds=settings.embedding_timeout_seconds,
    )


def build_engine(settings: Settings) -> ConversationEngine:
    store = build_session_store(settings)
    locks = SessionLockTable()
    token_counter = build_token_counter(settings.token_counter, model=settings.token_counter_model)

    clients = build_chat_clients(settings)
    router = ProviderRouter(clients, build_provider_states(settings), default_order=settings.provider_order)
    closeables: List[Any] = list(clients.values())

    index = None
    embedder = None
    indexer = None
    if settings.semantic_index_enabled:
        index = QdrantSemanticIndex(
            settings.qdrant_url,
            settings.qdrant_collection,
            api_key=settings.qdrant_api_key,
            dimensions=settings.embedding_dimensions,
        )
        embedder = build_embedder(settings)
        closeables.append(embedder)
        indexer = EmbeddingIndexer(store, index, embedder, locks, queue_size=settings.embedding_queue_size)

    assembler = ContextAssembler(
        store,
        index,
        embedder,
        budget=settings.context_token_budget,
        window=settings.recent_window_messages,
        top_k=settings.semantic_top_k,
        min_similarity=settings.semantic_min_similarity,
        index_timeout_seconds=settings.semantic_timeout_seconds,
        low_confidence_threshold=settings.low_confidence_threshold,
    )
    janitor = MemoryJanitor(
        store,
        index,
        locks,
        message_ttl_days=settings.memory_message_ttl_days,
        session_ttl_days=settings.memory_session_ttl_days,
        message_cap=settings.memory_session_message_cap,
        age_bucket_seconds=settings.janitor_age_bucket_seconds,
        decay_after_days=settings.memory_confidence_decay_after_days,
        decay_step=settings.memory_confidence_decay_step,
        decay_floor=settings.memory_confidence_decay_floor,
        sweep_interval_seconds=settings.janitor_sweep_interval_seconds,
    )
    system_core_prompt = settings.system_core_prompt
    return ConversationEngine(
        store=store,
        router=router,
        assembler=assembler,
        token_counter=token_counter,
        locks=locks,
        index=index,
        indexer=indexer,
        janitor=janitor,
        janitor_enabled=settings.janitor_enabled,
        system_prompt_for=(lambda _character_id: system_core_prompt) if system_core_prompt else None,
        recall_reinforcement=settings.recall_reinforcement,
        summary_window=settings.summary_window_messages,
        closeables=closeables,
    )


_HELP = "Commands: /character <id>, /summary, /status, /purge, /quit"


async def _run_terminal(settings: Settings) -> None:
    engine = build_engine(settings)
    await engine.start()
    session_id = f"terminal-{uuid.uuid4().hex[:12]}"
    character_id = settings.default_character_id
    print(f"Session {session_id} (character={character_id}). {_HELP}")
    try:
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break
            text = line.strip()
            if not text:
                continue
            try:
                if text in {"/quit", "/exit"}:
                    break
                if text.startswith("/character"):
                    _, _, requested = text.partition(" ")
                    if requested.strip():
                        character_id = requested.strip()
                        await engine.switch_character(session_id, character_id)
                    print(f"character={character_id}")
                    continue
                if text == "/summary":
                    print(await engine.summarize_session(session_id) or "(nothing to summarize yet)")
                    continue
                if text == "/status":
                    for name, value in (await engine.status()).items():
                        print(f"{name}: {value}")
                    continue
                if text == "/purge":
                    await engine.purge_session(session_id)
                    print("session purged")
                    continue
                result = await engine.handle_turn(session_id, character_id, text)
            except ContextEngineError as exc:
                logger.warning("[turn] session=%s failed: %s", session_id, exc)
                print(user_facing_message(exc))
                continue
            print(result.assistant_text)
    finally:
        await engine.close()


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    settings.validate()
    try:
        asyncio.run(_run_terminal(settings))
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")
