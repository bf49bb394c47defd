"""
Gateway orchestrator.

Runs one chat request end to end: entitlement check, tool discovery and
provider resolution before the stream opens, then token relay with
metered billing, tool execution and reconciliation while it is open.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Coroutine, List, Optional, Set

import httpx
from opentelemetry import trace

from .auth import Authenticator, Principal
from .billing.costs import calculate_token_cost, estimate_tokens
from .billing.ledger import HttpLedgerClient, LedgerClient, LocalLedgerClient
from .billing.middleware import StreamingBillingMiddleware, StreamSession
from .billing.store import LedgerStore
from .core.config import BillingSettings, GatewaySettings, ToolSettings
from .core.errors import (
    ChatRequestError,
    GatewayError,
    InsufficientCreditsError,
    LedgerError,
    LedgerUnavailableError,
    ProviderCredentialsError,
)
from .core.interface import ProviderCapability
from .entitlements import PREMIUM_REQUIRED, Decision, authorize, filter_tools
from .models.request import ChatRequest, ProviderConfig
from .models.response import (
    TextDelta,
    ToolCallsDetected,
    Usage,
    done_frame,
    error_frame,
    token_frame,
    tool_result_frame,
)
from .models.tools import Tool
from .providers import ProviderDispatcher
from .tools.executor import ToolExecutor
from .tools.registry import HttpToolCallLog, HttpToolRegistry, ToolCallLog, ToolRegistry
from .tools.router import ToolRouter, summarize_tool_results

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

UPSTREAM_ERROR = "Upstream provider error"


@dataclass
class GatewayServices:
    """
    Collaborators of the orchestrator.

    Per-principal factories build clients that act with the caller's own
    credentials (ledger, tool registry, call log).
    """
    authenticator: Authenticator
    dispatcher: ProviderDispatcher
    executor: ToolExecutor
    ledger_for: Callable[[Principal], LedgerClient]
    tool_registry_for: Callable[[Principal], ToolRegistry]
    call_log_for: Callable[[Principal], ToolCallLog]
    ledger_store: Optional[LedgerStore] = None
    http_client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(
        cls,
        settings: GatewaySettings,
        ledger_store: Optional[LedgerStore] = None,
    ) -> "GatewayServices":
        """
        Wire services from configuration.

        Spends go to the ledger URL when one is configured, otherwise
        straight to the given ledger store.
        """
        client = httpx.AsyncClient(timeout=settings.tools.timeout)
        billing = settings.billing
        tools = settings.tools

        if billing.ledger_url:
            def ledger_for(principal: Principal) -> LedgerClient:
                return HttpLedgerClient(billing.ledger_url, principal.token, client=client)
        elif ledger_store is not None:
            def ledger_for(principal: Principal) -> LedgerClient:
                return LocalLedgerClient(ledger_store, principal.user_id)
        else:
            raise ValueError("Either billing.ledger_url or a ledger store is required")

        def tool_registry_for(principal: Principal) -> ToolRegistry:
            return HttpToolRegistry(tools.registry_url, tools.tools_api_key, principal.token, client=client)

        def call_log_for(principal: Principal) -> ToolCallLog:
            return HttpToolCallLog(tools.registry_url, tools.tools_api_key, principal.token, client=client)

        return cls(
            authenticator=Authenticator(
                settings.identity_url,
                api_key=settings.identity_api_key,
                service_role_key=settings.service_role_key,
                client=client,
            ),
            dispatcher=ProviderDispatcher(settings.providers),
            executor=ToolExecutor(tools.tools_url, api_key=tools.tools_api_key, client=client),
            ledger_for=ledger_for,
            tool_registry_for=tool_registry_for,
            call_log_for=call_log_for,
            ledger_store=ledger_store,
            http_client=client,
        )

    async def aclose(self) -> None:
        if self.http_client is not None:
            await self.http_client.aclose()


@dataclass
class PreparedChat:
    """A chat request that passed every pre-stream check."""
    principal: Principal
    request: ChatRequest
    decision: Decision
    config: ProviderConfig
    prompt_tokens: int
    tools: List[Tool] = field(default_factory=list)


def should_forward(token: str) -> bool:
    """Drop empty and whitespace-only tokens, keeping line breaks."""
    if not token:
        return False
    if token.strip():
        return True
    return "\n" in token or "\r" in token


def chunk_text(text: str, size: int) -> List[str]:
    return [text[i:i + size] for i in range(0, len(text), size)]


def billing_error_code(error: BaseException) -> str:
    """Client-facing error string for a billing failure."""
    if isinstance(error, LedgerError):
        return getattr(error, "code", LedgerUnavailableError.code)
    return LedgerUnavailableError.code


class GatewayOrchestrator:
    """
    Per-request chat pipeline.

    prepare() raises ChatRequestError before anything is streamed;
    stream_chat() then yields server-sent event frames and never raises
    for upstream or billing failures, which end the stream with one error
    frame instead.
    """

    def __init__(
        self,
        services: GatewayServices,
        billing: Optional[BillingSettings] = None,
        tools: Optional[ToolSettings] = None,
    ):
        self.services = services
        self.billing = billing or BillingSettings()
        self.tool_settings = tools or ToolSettings()
        self._background: Set[asyncio.Task] = set()

    async def authenticate(self, authorization: Optional[str]) -> Principal:
        return await self.services.authenticator.authenticate(authorization)

    async def prepare(self, principal: Principal, request: ChatRequest) -> PreparedChat:
        """
        Authorize the request, discover persona tools and resolve the provider.

        Raises:
            ChatRequestError: 403 premium denial, 400 unsupported model,
                500 missing provider credentials
        """
        with tracer.start_as_current_span("prepare_chat") as span:
            span.set_attribute("model", request.model)
            span.set_attribute("user_id", principal.user_id)

            decision = authorize(principal, request.model, request.custom_api_key)
            if not decision.allowed:
                raise ChatRequestError(
                    "Premium model requires subscription or custom API key",
                    status_code=403,
                    reason=decision.reason or PREMIUM_REQUIRED,
                )

            tools = await self._discover_tools(principal, request.persona_id, decision.entitled)

            try:
                config = self.services.dispatcher.resolve(
                    request.model, decision.uses_custom_key, request.custom_api_key
                )
            except ProviderCredentialsError as e:
                raise ChatRequestError(e.message, status_code=500)

            if config is None:
                raise ChatRequestError("Unsupported model", status_code=400)

            prompt_tokens = estimate_tokens(request.prompt_text(), request.model)
            return PreparedChat(
                principal=principal,
                request=request,
                decision=decision,
                config=config,
                prompt_tokens=prompt_tokens,
                tools=tools,
            )

    async def _discover_tools(
        self,
        principal: Principal,
        persona_id: Optional[str],
        entitled: bool,
    ) -> List[Tool]:
        if not persona_id:
            return []

        registry = self.services.tool_registry_for(principal)
        try:
            tools = await registry.get_persona_tools(persona_id)
        except Exception as e:
            logger.warning(f"Tool discovery failed for persona {persona_id}, continuing without tools: {e}")
            return []

        return filter_tools(tools, entitled)

    async def stream_chat(self, prepared: PreparedChat) -> AsyncIterator[str]:
        """
        Stream a prepared chat request as SSE frames.

        Frames: {token}, {role: "tool", ...} per tool result, then either
        {done, usage} or a single {error}.
        """
        principal = prepared.principal
        request = prepared.request
        session = StreamSession(
            user_id=principal.user_id,
            model_id=request.model,
            prompt_tokens=prepared.prompt_tokens,
        )
        ledger = self.services.ledger_for(principal)

        middleware: Optional[StreamingBillingMiddleware] = None
        if prepared.decision.billable:
            middleware = StreamingBillingMiddleware(
                session,
                ledger,
                batch_threshold=self.billing.batch_threshold,
                flush_delay=self.billing.flush_delay,
            )

        client = self.services.dispatcher.create_client(prepared.config)
        offered = prepared.tools or None
        if offered and not client.supports(ProviderCapability.TOOL_USE):
            logger.warning(f"{client.family} cannot use tools, offering none for session {session.session_id}")
            offered = None

        finalize_task: Optional[asyncio.Task] = None
        tool_calls: List[dict] = []

        logger.info(
            f"Streaming {request.model} for user {principal.user_id} "
            f"(session {session.session_id}, billable={prepared.decision.billable})"
        )

        span = tracer.start_span("stream_chat")
        span.set_attribute("model", request.model)
        span.set_attribute("session_id", session.session_id)

        try:
            events = client.stream_chat(request, offered)
            try:
                async for event in events:
                    if isinstance(event, TextDelta):
                        if not should_forward(event.text):
                            continue
                        # Record before yielding so a disconnect at the yield still bills it
                        if middleware is None:
                            session.completion_text += event.text
                        else:
                            middleware.accumulate_text(event.text)
                        yield token_frame(event.text)
                        if middleware is not None and middleware.failure is not None:
                            yield error_frame(billing_error_code(middleware.failure))
                            return
                    elif isinstance(event, ToolCallsDetected):
                        tool_calls.extend(event.calls)
            except GatewayError as e:
                logger.error(f"Upstream error for session {session.session_id}: {e.message}")
                span.set_attribute("error", e.message)
                yield error_frame(e.message)
                return
            except Exception as e:
                logger.exception(f"Unexpected upstream failure for session {session.session_id}")
                span.set_attribute("error", str(e))
                yield error_frame(UPSTREAM_ERROR)
                return
            finally:
                await events.aclose()

            if middleware is not None:
                await middleware.drain()
                if middleware.failure is not None:
                    yield error_frame(billing_error_code(middleware.failure))
                    return

            tool_cost = None
            if tool_calls:
                router = ToolRouter(
                    principal,
                    self.services.tool_registry_for(principal),
                    self.services.call_log_for(principal),
                    self.services.executor,
                    ledger,
                    entitled=prepared.decision.entitled,
                )
                batch = await router.process_tool_calls(tool_calls)
                for result in batch.results:
                    yield tool_result_frame(result.to_message())
                if batch.total_tokens_spent:
                    tool_cost = batch.total_tokens_spent

                summary = summarize_tool_results(batch.results)
                for index, chunk in enumerate(chunk_text(summary, self.tool_settings.summary_chunk_size)):
                    if index:
                        await asyncio.sleep(self.tool_settings.summary_chunk_delay)
                    yield token_frame(chunk)

            if middleware is not None:
                finalize_task = self._detach(self._reconcile(middleware), session)
                try:
                    await asyncio.shield(finalize_task)
                except LedgerError as e:
                    yield error_frame(billing_error_code(e))
                    return

            completion_tokens = estimate_tokens(session.completion_text, request.model)
            usage = Usage(
                prompt_tokens=session.prompt_tokens,
                completion_tokens=completion_tokens,
                total_cost=calculate_token_cost(request.model, session.prompt_tokens, completion_tokens),
                tool_cost=tool_cost,
            )
            yield done_frame(usage)
        finally:
            if middleware is not None:
                middleware.close()
                if finalize_task is None:
                    # Bill what was generated even when the client went away
                    self._detach(self._reconcile(middleware), session)
            self._detach(client.aclose(), session)
            span.end()

    async def _reconcile(self, middleware: StreamingBillingMiddleware) -> int:
        """
        Finalize billing, retrying transient ledger failures.

        Every retry resubmits the same batches under their original keys,
        so a spend the ledger applied but did not acknowledge is not
        charged twice.
        """
        session_id = middleware.session.session_id
        attempts = max(self.billing.finalize_attempts, 1)
        for attempt in range(1, attempts + 1):
            try:
                return await middleware.finalize()
            except LedgerUnavailableError as e:
                if attempt == attempts:
                    logger.error(
                        f"Reconciliation for session {session_id} gave up after {attempts} attempts, "
                        f"{middleware.pending_cost} credits unacknowledged: {e}"
                    )
                    raise
                logger.warning(f"Reconciliation for session {session_id} failed (attempt {attempt}/{attempts}): {e}")
                await asyncio.sleep(self.billing.finalize_retry_delay * attempt)

    def _detach(self, coro: Coroutine, session: StreamSession) -> asyncio.Task:
        """Run work that must outlive the client connection."""
        task = asyncio.create_task(coro)
        self._background.add(task)

        def done(t: asyncio.Task) -> None:
            self._background.discard(t)
            if t.cancelled():
                return
            error = t.exception()
            if error is None:
                return
            if isinstance(error, InsufficientCreditsError):
                logger.warning(f"Final billing refused for session {session.session_id}: insufficient credits")
            else:
                logger.error(f"Teardown failed for session {session.session_id}: {error}")

        task.add_done_callback(done)
        return task

    async def drain(self) -> None:
        """Wait for detached teardown work, e.g. on shutdown."""
        while self._background:
            await asyncio.wait(list(self._background))
