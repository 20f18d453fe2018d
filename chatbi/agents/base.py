"""
Base Agent Framework

Abstract base class for the model-calling stages of the chat pipeline.
Provides a consistent interface, timing, logging, and error handling.

Usage:
    class MyAgent(BaseAgent):
        def __init__(self, llm_provider):
            super().__init__(name="MyAgent", max_retries=0)
            self.llm = llm_provider

        async def execute(self, input: AgentInput) -> AgentOutput:
            response = await self.llm.complete(...)
            self._track_llm_call(tokens=response.usage.total_tokens)
            return AgentOutput(success=True, data={...}, metadata=self._create_metadata())
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod

from chatbi.models.agent import AgentError, AgentInput, AgentMetadata, AgentOutput

logger = logging.getLogger(__name__)


class BaseAgent(ABC):
    """
    Abstract base class for pipeline agents.

    The __call__ method wraps execute() with:
        - Performance timing
        - Error handling and logging
        - Retry with exponential backoff for recoverable AgentErrors

    Agents whose model calls count against the per-request round-trip bound
    should pass ``max_retries=0`` so retries happen only where the pipeline
    decides.
    """

    def __init__(self, name: str, max_retries: int = 0, timeout_seconds: float | None = None):
        self.name = name
        self.max_retries = max_retries
        self.timeout_seconds = timeout_seconds
        self._metadata = self._create_metadata()

        logger.debug(
            f"Initialized {self.name}",
            extra={"agent": self.name, "max_retries": max_retries},
        )

    @abstractmethod
    async def execute(self, input: AgentInput) -> AgentOutput:
        """
        Execute the agent's core logic.

        Raises:
            AgentError: On execution failures (recoverable or not)
        """

    async def __call__(self, input: AgentInput) -> AgentOutput:
        """
        Execute the agent with timing, logging, and error handling.

        Raises:
            AgentError: If all retry attempts fail or error is not recoverable
        """
        start_time = time.perf_counter()
        attempt = 0

        logger.info(
            f"Starting {self.name}",
            extra={
                "agent": self.name,
                "query": input.query[:100],
                "context_keys": list(input.context.keys()),
            },
        )

        while True:
            try:
                self._metadata = self._create_metadata()
                if self.timeout_seconds:
                    output = await asyncio.wait_for(self.execute(input), self.timeout_seconds)
                else:
                    output = await self.execute(input)

                duration_ms = (time.perf_counter() - start_time) * 1000
                self._metadata.mark_complete()
                self._metadata.duration_ms = duration_ms
                output.metadata = self._metadata

                logger.info(
                    f"Completed {self.name}",
                    extra={
                        "agent": self.name,
                        "success": output.success,
                        "duration_ms": duration_ms,
                        "attempt": attempt + 1,
                        "llm_calls": self._metadata.llm_calls,
                    },
                )
                return output

            except AgentError as e:
                attempt += 1
                logger.warning(
                    f"Agent error in {self.name}: {e.message}",
                    extra={
                        "agent": self.name,
                        "recoverable": e.recoverable,
                        "attempt": attempt,
                        "context": e.context,
                    },
                )
                if not e.recoverable or attempt > self.max_retries:
                    self._metadata.mark_complete()
                    self._metadata.error = e.message
                    logger.error(
                        f"Failed {self.name} after {attempt} attempt(s)",
                        extra={
                            "agent": self.name,
                            "duration_ms": (time.perf_counter() - start_time) * 1000,
                        },
                    )
                    raise

                wait_time = 2 ** (attempt - 1)
                logger.info(f"Retrying {self.name} in {wait_time}s")
                await asyncio.sleep(wait_time)

            except Exception as e:
                self._metadata.mark_complete()
                self._metadata.error = str(e)
                logger.error(
                    f"Unexpected error in {self.name}",
                    extra={"agent": self.name, "error_type": type(e).__name__},
                    exc_info=True,
                )
                raise AgentError(
                    agent=self.name,
                    message=f"Unexpected error: {e}",
                    recoverable=False,
                    context={"error_type": type(e).__name__},
                ) from e

    def _create_metadata(self) -> AgentMetadata:
        return AgentMetadata(agent_name=self.name)

    def _track_llm_call(self, tokens: int | None = None) -> None:
        """Record one model call (and its tokens) in the current metadata."""
        self._metadata.llm_calls += 1
        if tokens:
            self._metadata.tokens_used = (self._metadata.tokens_used or 0) + tokens
