"""
LLM completion boundary.

The pipeline treats the model as prompt in, text and token usage out.
LocalCompletionService runs a GGUF model through llama-cpp-python in the
default executor; RateLimitedCompletionService wraps any service with
per-user and global rate limits plus usage accounting.
"""

import asyncio
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from crmpilot.cache.rate_limiter import RateLimiter
from crmpilot.config import MODEL_CONTEXT, MODEL_COSTS, MODEL_ID, MODEL_PATH
from crmpilot.utils.errors import CompletionError
from crmpilot.utils.logging import logger


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class CompletionOptions:
    """Per-call metadata used for limits and accounting."""
    user_id: Optional[str] = None
    operation: str = "completion"
    model: Optional[str] = None


@dataclass
class Completion:
    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: Optional[str] = None


class CompletionService(ABC):
    """Anything that can turn a prompt into text."""

    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        messages: list[dict],
        temperature: float = 0.1,
        max_tokens: int = 500,
        options: Optional[CompletionOptions] = None,
    ) -> Completion:
        """
        Run one chat completion.

        Args:
            system_prompt: Instructions placed before the conversation
            messages: List of {"role": "user"|"assistant", "content": "..."}
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            options: Caller metadata (user, operation, model)

        Returns:
            Completion with generated text and token usage
        """


class ServiceStatus(Enum):
    STOPPED = "stopped"
    LOADING = "loading"
    RUNNING = "running"
    ERROR = "error"


class LocalCompletionService(CompletionService):
    """
    Completion backed by a local llama-cpp-python model.

    The model is loaded lazily on first use. A Llama instance is not safe
    for concurrent calls, so inference is serialized with a thread lock
    held by the executor thread itself: a caller that times out stops
    waiting, but the next generation still waits for the running one.
    """

    def __init__(
        self,
        model_path: Path = MODEL_PATH,
        model_id: str = MODEL_ID,
        n_ctx: int = MODEL_CONTEXT,
        n_gpu_layers: int = -1,  # -1 = all layers on GPU
    ):
        self.model_path = Path(model_path)
        self.model_id = model_id
        self.n_ctx = n_ctx
        self.n_gpu_layers = n_gpu_layers
        self.llm: Any = None
        self.status = ServiceStatus.STOPPED
        self.error_message: Optional[str] = None
        self._lock = asyncio.Lock()
        self._inference_lock = threading.Lock()

    async def start(self) -> None:
        """Load the model into memory if it is not loaded yet."""
        async with self._lock:
            if self.llm is not None:
                return
            if not self.model_path.exists():
                self.status = ServiceStatus.ERROR
                self.error_message = f"Model not found: {self.model_path}"
                raise CompletionError(self.error_message)

            logger.info(f"Loading {self.model_id} from {self.model_path}...")
            self.status = ServiceStatus.LOADING
            try:
                self.llm = await self._load_model()
            except Exception as e:
                self.status = ServiceStatus.ERROR
                self.error_message = str(e)
                logger.error(f"Failed to load {self.model_id}: {e}")
                raise CompletionError(f"Model loading failed: {e}") from e

            self.status = ServiceStatus.RUNNING
            logger.info(f"Model {self.model_id} loaded successfully")

    async def _load_model(self):
        """Load model in thread pool."""
        from llama_cpp import Llama

        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(
            None,
            lambda: Llama(
                model_path=str(self.model_path),
                n_ctx=self.n_ctx,
                n_gpu_layers=self.n_gpu_layers,
                verbose=False,
            ),
        )

    async def stop(self) -> None:
        """Unload the model."""
        async with self._lock:
            if self.llm is None:
                return
            try:
                del self.llm
            except Exception as e:
                logger.warning(f"Error during model cleanup: {e}")
            self.llm = None
            self.status = ServiceStatus.STOPPED
            logger.info(f"Unloaded {self.model_id}")

    def is_running(self) -> bool:
        return self.status == ServiceStatus.RUNNING

    async def complete(
        self,
        system_prompt: str,
        messages: list[dict],
        temperature: float = 0.1,
        max_tokens: int = 500,
        options: Optional[CompletionOptions] = None,
    ) -> Completion:
        if self.llm is None:
            await self.start()

        chat_messages = [{"role": "system", "content": system_prompt}, *messages]
        llm = self.llm

        def generate():
            with self._inference_lock:
                return llm.create_chat_completion(
                    messages=chat_messages,
                    max_tokens=max_tokens,
                    temperature=temperature,
                )

        loop = asyncio.get_event_loop()
        response = await loop.run_in_executor(None, generate)

        try:
            text = response["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise CompletionError(f"Malformed model response: {e}") from e

        usage = response.get("usage") or {}
        return Completion(
            text=text,
            usage=TokenUsage(
                input_tokens=int(usage.get("prompt_tokens", 0)),
                output_tokens=int(usage.get("completion_tokens", 0)),
            ),
            model=self.model_id,
        )


@dataclass
class UsageRecord:
    user_id: Optional[str]
    operation: str
    model: str
    usage: TokenUsage
    cost: float


class UsageTracker:
    """Accumulates token usage and estimated cost per user and model."""

    MAX_RECORDS = 1000

    def __init__(self, costs: Optional[dict[str, dict[str, float]]] = None):
        self.costs = costs or MODEL_COSTS
        self.records: list[UsageRecord] = []

    def cost_of(self, model: str, usage: TokenUsage) -> float:
        rates = self.costs.get(model) or self.costs.get("default", {"input": 0.0, "output": 0.0})
        return (
            usage.input_tokens / 1000 * rates["input"]
            + usage.output_tokens / 1000 * rates["output"]
        )

    def record(self, options: CompletionOptions, model: str, usage: TokenUsage) -> float:
        cost = self.cost_of(model, usage)
        self.records.append(
            UsageRecord(
                user_id=options.user_id,
                operation=options.operation,
                model=model,
                usage=usage,
                cost=cost,
            )
        )
        if len(self.records) > self.MAX_RECORDS:
            self.records = self.records[-self.MAX_RECORDS:]
        logger.debug(
            f"Usage {options.operation} ({model}): {usage.total} tokens, ${cost:.5f}"
        )
        return cost

    def summary(self, user_id: Optional[str] = None) -> dict:
        rows = [r for r in self.records if user_id is None or r.user_id == user_id]
        by_model: dict[str, int] = {}
        for r in rows:
            by_model[r.model] = by_model.get(r.model, 0) + r.usage.total
        return {
            "calls": len(rows),
            "input_tokens": sum(r.usage.input_tokens for r in rows),
            "output_tokens": sum(r.usage.output_tokens for r in rows),
            "cost": round(sum(r.cost for r in rows), 6),
            "tokens_by_model": by_model,
        }


class RateLimitedCompletionService(CompletionService):
    """Applies rate limits and records usage around another service."""

    def __init__(
        self,
        inner: CompletionService,
        limiter: Optional[RateLimiter] = None,
        tracker: Optional[UsageTracker] = None,
    ):
        self.inner = inner
        self.limiter = limiter or RateLimiter()
        self.tracker = tracker or UsageTracker()

    async def complete(
        self,
        system_prompt: str,
        messages: list[dict],
        temperature: float = 0.1,
        max_tokens: int = 500,
        options: Optional[CompletionOptions] = None,
    ) -> Completion:
        options = options or CompletionOptions()
        self.limiter.require(options.user_id)

        completion = await self.inner.complete(
            system_prompt,
            messages,
            temperature=temperature,
            max_tokens=max_tokens,
            options=options,
        )
        model = options.model or completion.model or "default"
        self.tracker.record(options, model, completion.usage)
        return completion
