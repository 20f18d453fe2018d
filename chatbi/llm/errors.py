"""
Model provider error taxonomy.

Provider SDKs and raw HTTP calls raise a wide variety of exceptions. They are
folded into three user-facing categories, each carrying a remediation hint:

    - ModelProviderTimeout: the call exceeded its deadline
    - ModelProviderNetworkError: DNS failure, refused connection, or other
      transport failure
    - ModelProviderAuthError: credentials were rejected
"""

import asyncio
import socket
from typing import Any, Literal

import anthropic
import httpx
import openai

from chatbi.models.agent import LLMError

NetworkErrorKind = Literal["dns", "connection_refused", "network"]

_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo",
    "temporary failure in name resolution",
    "enotfound",
    "no address associated",
)
_REFUSED_MARKERS = ("connection refused", "econnrefused", "connect call failed")


class ModelProviderError(LLMError):
    """Base class for classified provider failures."""

    remediation: str = "请检查模型配置后重试"

    def __init__(
        self,
        provider: str,
        message: str,
        recoverable: bool = False,
        context: dict[str, Any] | None = None,
    ):
        self.provider = provider
        super().__init__(
            agent=f"llm:{provider}",
            message=message,
            recoverable=recoverable,
            context={**(context or {}), "provider": provider, "remediation": self.remediation},
        )

    @property
    def user_message(self) -> str:
        return f"{self.message}。{self.remediation}"


class ModelProviderTimeout(ModelProviderError):
    """The provider did not answer within the configured deadline."""

    remediation = "模型响应超时，请稍后重试，或在配置中调大超时时间 / 换用更快的模型"

    def __init__(self, provider: str, timeout: float, context: dict[str, Any] | None = None):
        self.timeout = timeout
        super().__init__(
            provider,
            f"模型服务 {provider} 在 {timeout:g} 秒内未响应",
            recoverable=True,
            context={**(context or {}), "timeout": timeout},
        )


class ModelProviderNetworkError(ModelProviderError):
    """Transport-level failure reaching the provider."""

    _REMEDIATIONS = {
        "dns": "无法解析模型服务地址，请检查 base URL 中的主机名是否正确",
        "connection_refused": "模型服务拒绝连接，请确认服务已启动（本地模型请检查 Ollama 是否运行）且端口正确",
        "network": "无法连接模型服务，请检查网络连接与代理设置",
    }

    def __init__(
        self,
        provider: str,
        kind: NetworkErrorKind,
        detail: str,
        context: dict[str, Any] | None = None,
    ):
        self.kind = kind
        self.remediation = self._REMEDIATIONS[kind]
        super().__init__(
            provider,
            f"连接模型服务 {provider} 失败: {detail}",
            recoverable=kind == "network",
            context={**(context or {}), "kind": kind},
        )


class ModelProviderAuthError(ModelProviderError):
    """Credentials were rejected by the provider."""

    remediation = "模型服务认证失败，请检查 API Key 是否正确且未过期"

    def __init__(self, provider: str, detail: str, context: dict[str, Any] | None = None):
        super().__init__(provider, f"模型服务 {provider} 认证失败: {detail}", context=context)


def _iter_chain(exc: BaseException):
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def _network_kind(exc: BaseException) -> NetworkErrorKind:
    for item in _iter_chain(exc):
        if isinstance(item, socket.gaierror):
            return "dns"
        if isinstance(item, ConnectionRefusedError):
            return "connection_refused"
        text = str(item).lower()
        if any(marker in text for marker in _DNS_MARKERS):
            return "dns"
        if any(marker in text for marker in _REFUSED_MARKERS):
            return "connection_refused"
    return "network"


def classify_provider_error(
    provider: str, exc: BaseException, timeout: float
) -> ModelProviderError | None:
    """
    Map a raw provider exception to the taxonomy.

    Returns None when the exception is not a transport, timeout, or auth
    failure, in which case the caller should propagate the original error.
    """
    if isinstance(exc, ModelProviderError):
        return exc

    for item in _iter_chain(exc):
        if isinstance(
            item,
            asyncio.TimeoutError
            | TimeoutError
            | httpx.TimeoutException
            | openai.APITimeoutError
            | anthropic.APITimeoutError,
        ):
            return ModelProviderTimeout(provider, timeout)

    for item in _iter_chain(exc):
        if isinstance(item, openai.AuthenticationError | anthropic.AuthenticationError):
            return ModelProviderAuthError(provider, str(item))
        if isinstance(item, openai.PermissionDeniedError | anthropic.PermissionDeniedError):
            return ModelProviderAuthError(provider, str(item))
        if isinstance(item, httpx.HTTPStatusError) and item.response.status_code in {401, 403}:
            return ModelProviderAuthError(provider, f"HTTP {item.response.status_code}")

    for item in _iter_chain(exc):
        if isinstance(
            item,
            httpx.TransportError
            | openai.APIConnectionError
            | anthropic.APIConnectionError
            | ConnectionError
            | socket.gaierror,
        ):
            return ModelProviderNetworkError(provider, _network_kind(exc), str(item) or repr(item))

    return None
