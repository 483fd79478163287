"""Request orchestration.

A call moves through ``received -> authenticated -> attribution_resolved ->
limits_passed -> routed -> provider_invoked -> metered_*``. Any stage may
short-circuit with a `GatewayError`. Rejections before a provider is
contacted are logged at zero cost; provider failures are metered under the
configured failure cost policy; authentication failures are never logged
because no organization can be trusted yet.

Streaming calls run every pre-provider stage eagerly, then hand back a
`GatewayStream`. Metering for the stream runs in a background task that
waits on a completion future resolved when the stream finishes, fails or is
closed by the caller.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from pulse_gateway.billing.metering import CallOutcome, MeteringReceipt, MeteringService
from pulse_gateway.billing.pricing import PricingTable
from pulse_gateway.models.domain import Attribution, Provider, new_id
from pulse_gateway.models.errors import GatewayError, InvalidRequestError, ProviderError, RoutingError
from pulse_gateway.providers.base import ProviderAdapter, ProviderRequest, ProviderResponse, StreamDelta
from pulse_gateway.services.attribution import AttributionHints, check_model_allowed, resolve_attribution
from pulse_gateway.services.cost_guard import CostGuard
from pulse_gateway.services.key_service import AuthenticatedKey, KeyService
from pulse_gateway.services.limit_counter import RateLimiter
from pulse_gateway.services.model_router import ModelRouter, RouteTarget
from pulse_gateway.services.policies import PolicyCheck, PolicyService
from pulse_gateway.utils.redaction import redact_known
from pulse_gateway.utils.tokens import estimate_tokens, hash_prompt, message_text, prompt_text

logger = logging.getLogger(__name__)

CLIENT_CLOSED_REQUEST = 499


class CallStage(str, Enum):
    RECEIVED = "received"
    AUTHENTICATED = "authenticated"
    ATTRIBUTION_RESOLVED = "attribution_resolved"
    LIMITS_PASSED = "limits_passed"
    ROUTED = "routed"
    PROVIDER_INVOKED = "provider_invoked"
    METERED_SUCCESS = "metered_success"
    METERED_FAILURE = "metered_failure"


def new_request_id() -> str:
    return f"req_{new_id()}"


@dataclass
class GatewayRequest:
    model: str
    messages: list[Mapping[str, Any]]
    max_tokens: int | None = None
    temperature: float | None = None
    hints: AttributionHints = field(default_factory=AttributionHints)
    source: str = "chat.completions"
    request_id: str = field(default_factory=new_request_id)


@dataclass(frozen=True)
class GatewayResult:
    request_id: str
    model: str
    provider: str
    content: str
    input_tokens: int
    output_tokens: int
    cost_eur: Decimal
    latency_ms: int
    request_log_id: str | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class CallContext:
    request: GatewayRequest
    key: AuthenticatedKey
    messages: list[dict[str, str]]
    prompt_hash: str
    started: float = field(default_factory=time.perf_counter)
    stage: CallStage = CallStage.AUTHENTICATED
    attribution: Attribution = Attribution()
    targets: list[RouteTarget] = field(default_factory=list)
    target: RouteTarget | None = None

    def advance(self, stage: CallStage) -> None:
        logger.debug("call stage", extra={"request_id": self.request.request_id, "stage": stage.value})
        self.stage = stage

    def provider_request(self) -> ProviderRequest:
        return ProviderRequest(
            model=self.request.model,
            messages=self.messages,
            max_tokens=self.request.max_tokens,
            temperature=self.request.temperature,
        )

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)


@dataclass(frozen=True)
class StreamSummary:
    status: str
    text: str = ""
    input_tokens: int | None = None
    output_tokens: int | None = None
    error: GatewayError | None = None
    started: bool = True


class GatewayStream:
    """Async iterator of text fragments for one streamed call.

    Callers must either exhaust the stream or call `aclose`; closing early
    stops reading from the provider and meters the partial usage.
    """

    def __init__(
        self,
        chunks: AsyncGenerator[str, None],
        *,
        request_id: str,
        model: str,
        provider: str,
        completion: asyncio.Future[StreamSummary] | None = None,
    ) -> None:
        self._chunks = chunks
        self._completion = completion
        self.request_id = request_id
        self.model = model
        self.provider = provider

    @classmethod
    def from_result(cls, result: GatewayResult) -> GatewayStream:
        return cls(_single_chunk(result.content), request_id=result.request_id, model=result.model, provider=result.provider)

    def __aiter__(self) -> AsyncIterator[str]:
        return self._chunks

    @property
    def reading(self) -> bool:
        return bool(getattr(self._chunks, "ag_running", False))

    async def aclose(self) -> None:
        try:
            await self._chunks.aclose()
        finally:
            if self._completion is not None and not self._completion.done():
                self._completion.set_result(StreamSummary(status="cancelled", started=False))


async def _single_chunk(text: str) -> AsyncIterator[str]:
    if text:
        yield text


def normalize_messages(messages: list[Mapping[str, Any]]) -> list[dict[str, str]]:
    if not messages:
        raise InvalidRequestError("messages must contain at least one message", param="messages")
    normalized: list[dict[str, str]] = []
    for message in messages:
        role = message.get("role")
        if not role:
            raise InvalidRequestError("every message needs a role", param="messages")
        normalized.append({"role": str(role), "content": message_text(message.get("content"))})
    return normalized


class Gateway:
    def __init__(
        self,
        *,
        key_service: KeyService,
        rate_limiter: RateLimiter,
        cost_guard: CostGuard,
        router: ModelRouter,
        adapters: Mapping[Provider, ProviderAdapter],
        metering: MeteringService,
        organizations: Any,
        pricing: PricingTable,
        policies: PolicyService | None = None,
        failover_enabled: bool = False,
        default_output_tokens: int = 1000,
    ) -> None:
        self.key_service = key_service
        self.rate_limiter = rate_limiter
        self.cost_guard = cost_guard
        self.router = router
        self.adapters = dict(adapters)
        self.metering = metering
        self.organizations = organizations
        self.pricing = pricing
        self.policies = policies
        self.failover_enabled = failover_enabled
        self.default_output_tokens = default_output_tokens
        self._tasks: set[asyncio.Task[Any]] = set()
        self._streams: set[GatewayStream] = set()

    async def authenticate(self, credential: str | None) -> AuthenticatedKey:
        return await self.key_service.authenticate(credential)

    async def handle(self, credential: str | None, request: GatewayRequest) -> GatewayResult:
        key = await self.authenticate(credential)
        return await self.invoke(key, request)

    async def handle_stream(self, credential: str | None, request: GatewayRequest) -> GatewayStream:
        key = await self.authenticate(credential)
        return await self.invoke_stream(key, request)

    async def invoke(self, key: AuthenticatedKey, request: GatewayRequest) -> GatewayResult:
        ctx = await self._prepare(key, request)
        return await self._complete(ctx)

    async def invoke_stream(self, key: AuthenticatedKey, request: GatewayRequest) -> GatewayStream:
        ctx = await self._prepare(key, request)
        target = self._target(ctx)
        adapter = self.adapters[target.provider]
        if not adapter.supports_streaming:
            return GatewayStream.from_result(await self._complete(ctx, streamed=True))

        completion: asyncio.Future[StreamSummary] = asyncio.get_running_loop().create_future()
        self._schedule(self._meter_stream(ctx, completion))
        stream = GatewayStream(
            self._relay(ctx, adapter, target, completion),
            request_id=request.request_id,
            model=request.model,
            provider=target.provider.value,
            completion=completion,
        )
        self._streams.add(stream)
        completion.add_done_callback(lambda _: self._streams.discard(stream))
        return stream

    async def drain(self) -> None:
        """Wait for background metering and webhook deliveries to finish.

        Streams nobody is reading are closed first so their metering can run.
        """
        for stream in list(self._streams):
            if not stream.reading:
                logger.warning("closing abandoned stream", extra={"request_id": stream.request_id})
                await stream.aclose()
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        dispatcher = self.metering.dispatcher
        if dispatcher is not None:
            await dispatcher.drain()

    async def _prepare(self, key: AuthenticatedKey, request: GatewayRequest) -> CallContext:
        messages = normalize_messages(request.messages)
        ctx = CallContext(
            request=request,
            key=key,
            messages=messages,
            prompt_hash=hash_prompt(messages),
            attribution=key.default_attribution,
        )
        try:
            organization_requires = False
            if key.require_attribution is None:
                organization = await self.organizations.get_organization(key.organization_id)
                organization_requires = bool(organization and organization.require_attribution)
            policies = await self.policies.active_policies(key.organization_id) if self.policies is not None else []
            ctx.attribution = resolve_attribution(
                key,
                request.hints,
                organization_requires=organization_requires,
                policy_requires=PolicyService.requires_attribution(policies),
            )
            ctx.advance(CallStage.ATTRIBUTION_RESOLVED)

            check_model_allowed(key, request.model)
            await self.rate_limiter.check(key.id, key.rate_limit_rpm)
            await self.cost_guard.check(key)
            if self.policies is not None:
                input_tokens, output_tokens = self._estimate_tokens(ctx)
                await self.policies.check(
                    PolicyCheck(
                        organization_id=key.organization_id,
                        model=request.model,
                        estimated_tokens=input_tokens + output_tokens,
                        estimated_cost_eur=self._estimate_cost(ctx),
                    ),
                    policies,
                )
            ctx.advance(CallStage.LIMITS_PASSED)

            if self.failover_enabled:
                ctx.targets = await self.router.resolve_chain(key.organization_id, request.model)
            else:
                ctx.targets = [await self.router.resolve(key.organization_id, request.model)]
            ctx.target = ctx.targets[0]
            ctx.advance(CallStage.ROUTED)

            self.cost_guard.check_route_ceiling(ctx.target.route, self._estimate_cost(ctx))
        except GatewayError as exc:
            logger.info(
                "request rejected",
                extra={"request_id": request.request_id, "stage": ctx.stage.value, "code": exc.code},
            )
            await self._meter(ctx, error=exc)
            raise
        return ctx

    async def _complete(self, ctx: CallContext, streamed: bool = False) -> GatewayResult:
        try:
            response = await self._call_provider(ctx)
        except GatewayError as exc:
            await self._meter(ctx, error=exc, streamed=streamed)
            raise
        ctx.advance(CallStage.PROVIDER_INVOKED)

        receipt = await self._meter(
            ctx,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            streamed=streamed,
        )
        return GatewayResult(
            request_id=ctx.request.request_id,
            model=ctx.request.model,
            provider=self._target(ctx).provider.value,
            content=response.content,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            cost_eur=receipt.cost_eur if receipt else Decimal("0"),
            latency_ms=ctx.elapsed_ms(),
            request_log_id=receipt.request_log.id if receipt and receipt.request_log else None,
        )

    async def _call_provider(self, ctx: CallContext) -> ProviderResponse:
        error: GatewayError | None = None
        for index, target in enumerate(ctx.targets):
            ctx.target = target
            adapter = self.adapters[target.provider]
            try:
                return await adapter.invoke(target.secret, ctx.provider_request())
            except GatewayError as exc:
                error = exc
            except Exception as exc:
                error = ProviderError(
                    redact_known(f"Unexpected {target.provider.value} failure: {exc}", target.secret),
                    provider=target.provider.value,
                )
                logger.error("unexpected provider failure", extra={"request_id": ctx.request.request_id, "error": error.message})

            if isinstance(error, ProviderError) and index + 1 < len(ctx.targets):
                logger.warning(
                    "provider failed, trying next route",
                    extra={"request_id": ctx.request.request_id, "provider": target.provider.value, "code": error.code},
                )
                continue
            break
        if error is None:
            raise RoutingError(model=ctx.request.model)
        raise error

    async def _relay(
        self,
        ctx: CallContext,
        adapter: ProviderAdapter,
        target: RouteTarget,
        completion: asyncio.Future[StreamSummary],
    ) -> AsyncIterator[str]:
        parts: list[str] = []
        usage = StreamDelta(done=True)
        status = "cancelled"
        error: GatewayError | None = None
        upstream = adapter.stream(target.secret, ctx.provider_request())
        try:
            async for delta in upstream:
                if delta.done:
                    usage = delta
                    continue
                parts.append(delta.text)
                yield delta.text
            status = "completed"
        except GatewayError as exc:
            status, error = "failed", exc
            raise
        except Exception as exc:
            status = "failed"
            error = ProviderError(
                redact_known(f"{target.provider.value} stream interrupted: {exc}", target.secret),
                provider=target.provider.value,
            )
            raise error from None
        finally:
            await upstream.aclose()
            if not completion.done():
                completion.set_result(
                    StreamSummary(
                        status=status,
                        text="".join(parts),
                        input_tokens=usage.input_tokens,
                        output_tokens=usage.output_tokens,
                        error=error,
                    )
                )

    async def _meter_stream(self, ctx: CallContext, completion: asyncio.Future[StreamSummary]) -> None:
        summary = await completion
        try:
            if summary.status == "failed" and summary.error is not None:
                await self._meter(
                    ctx,
                    error=summary.error,
                    input_tokens=summary.input_tokens or 0,
                    output_tokens=summary.output_tokens or 0,
                    streamed=True,
                )
                return

            if summary.started:
                input_tokens = summary.input_tokens
                if input_tokens is None:
                    input_tokens = estimate_tokens(prompt_text(ctx.messages))
                output_tokens = summary.output_tokens
                if output_tokens is None:
                    output_tokens = estimate_tokens(summary.text)
            else:
                input_tokens = output_tokens = 0

            ctx.advance(CallStage.PROVIDER_INVOKED)
            await self._meter(
                ctx,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                status_code=200 if summary.status == "completed" else CLIENT_CLOSED_REQUEST,
                streamed=True,
            )
        except Exception:
            logger.exception("stream metering failed", extra={"request_id": ctx.request.request_id})

    async def _meter(
        self,
        ctx: CallContext,
        *,
        error: GatewayError | None = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
        status_code: int = 200,
        streamed: bool = False,
    ) -> MeteringReceipt | None:
        receipt = await self.metering.record(
            CallOutcome(
                request_id=ctx.request.request_id,
                key=ctx.key,
                model=ctx.request.model,
                attribution=ctx.attribution,
                provider=self._provider_label(ctx),
                prompt_hash=ctx.prompt_hash,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                latency_ms=ctx.elapsed_ms(),
                status_code=error.status_code if error else status_code,
                error=error,
                reached_provider=error is None or isinstance(error, ProviderError),
                source=ctx.request.source,
                streamed=streamed,
            )
        )
        ctx.advance(CallStage.METERED_FAILURE if error else CallStage.METERED_SUCCESS)
        return receipt

    def _provider_label(self, ctx: CallContext) -> str | None:
        if ctx.target is not None:
            return ctx.target.provider.value
        provider = self.pricing.provider_for_model(ctx.request.model)
        return provider.value if provider else None

    def _estimate_tokens(self, ctx: CallContext) -> tuple[int, int]:
        return estimate_tokens(prompt_text(ctx.messages)), ctx.request.max_tokens or self.default_output_tokens

    def _estimate_cost(self, ctx: CallContext) -> Decimal:
        input_tokens, output_tokens = self._estimate_tokens(ctx)
        return self.pricing.estimate_cost(ctx.request.model, input_tokens, output_tokens)

    @staticmethod
    def _target(ctx: CallContext) -> RouteTarget:
        if ctx.target is None:
            raise RoutingError(model=ctx.request.model)
        return ctx.target

    def _schedule(self, coroutine: Awaitable[Any]) -> None:
        task = asyncio.create_task(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
