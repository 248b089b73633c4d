from __future__ import annotations

from abc import ABC, abstractmethod

from .types import PollResult, ProviderHandle, ProviderRequest, PushHandler


class InferenceProvider(ABC):
    @property
    @abstractmethod
    def provider_id(self) -> str: ...

    @abstractmethod
    async def submit(self, req: ProviderRequest) -> ProviderHandle:
        """Queue a job. Raises ProviderRejectedError or NetworkError."""
        raise NotImplementedError

    @abstractmethod
    async def poll(self, handle: ProviderHandle) -> PollResult:
        """Report the current status of a queued job. Raises NetworkError on transport failure."""
        raise NotImplementedError

    def bind_push(self, handler: PushHandler) -> None:
        """Register the receiver for push completions. Providers without a push channel ignore it."""

    async def aclose(self) -> None:
        pass
