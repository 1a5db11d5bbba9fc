"""Provider registry: detection cache and model catalog across all backends."""

import logging
import threading
from typing import Optional

from ..core import AuthStatus, InstallationStatus, ModelDefinition
from ..provider import AgentProvider
from .claude_code import ClaudeCodeProvider
from .codex import CodexProvider
from .cursor import CursorProvider
from .opencode import OpenCodeProvider

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: tuple[type[AgentProvider], ...] = (
    ClaudeCodeProvider,
    CodexProvider,
    CursorProvider,
    OpenCodeProvider,
)


class ProviderRegistry:
    """Uniform access to every provider backend.

    Only positive results are cached: a CLI found on disk and a successful
    auth check. A missing install or login is probed again on the next call,
    so the user can fix it without restarting. Two callers racing on an empty
    cache both compute the result, which is harmless: probes are read-only.
    """

    def __init__(self, providers: Optional[list[AgentProvider]] = None):
        if providers is None:
            providers = [cls() for cls in PROVIDER_CLASSES]
        self._providers = {p.name: p for p in providers}
        self._installations: dict[str, InstallationStatus] = {}
        self._auth: dict[str, AuthStatus] = {}
        self._lock = threading.Lock()

    @property
    def provider_ids(self) -> list[str]:
        return list(self._providers)

    def get(self, provider_id: str) -> Optional[AgentProvider]:
        return self._providers.get(provider_id)

    def detect(self, provider_id: str) -> InstallationStatus:
        with self._lock:
            cached = self._installations.get(provider_id)
        if cached is not None:
            return cached

        provider = self.get(provider_id)
        if provider is None:
            return InstallationStatus(installed=False, error=f"unknown provider: {provider_id}")

        status = provider.detect_installation()
        logger.debug("Detected %s: installed=%s method=%s", provider_id, status.installed, status.method)
        # API-key-only has no executable yet; keep probing until the CLI appears.
        if status.installed and status.path:
            with self._lock:
                self._installations[provider_id] = status
        return status

    def check_auth(self, provider_id: str) -> AuthStatus:
        with self._lock:
            cached = self._auth.get(provider_id)
        if cached is not None:
            return cached

        provider = self.get(provider_id)
        if provider is None:
            return AuthStatus(authenticated=False, error=f"unknown provider: {provider_id}")

        status = provider.check_auth()
        if status.authenticated:
            with self._lock:
                self._auth[provider_id] = status
        return status

    def list_models(self, provider_id: Optional[str] = None) -> list[ModelDefinition]:
        if provider_id is not None:
            provider = self.get(provider_id)
            return provider.list_models() if provider else []
        models = []
        for provider in self._providers.values():
            models.extend(provider.list_models())
        return models

    def find_model(self, model_id: str) -> Optional[ModelDefinition]:
        for model in self.list_models():
            if model.id == model_id:
                return model
        return None

    def provider_for_model(self, model_id: str) -> Optional[AgentProvider]:
        model = self.find_model(model_id)
        return self.get(model.provider) if model else None

    def status(self) -> dict[str, dict]:
        """Installed/authenticated/version per provider id, with install advice."""
        result = {}
        for provider_id, provider in self._providers.items():
            installation = self.detect(provider_id)
            auth = self.check_auth(provider_id)
            result[provider_id] = {
                "name": provider.display_name,
                "installed": installation.installed,
                "path": installation.path,
                "version": installation.version,
                "method": installation.method,
                "has_api_key": installation.has_api_key or auth.has_env_key,
                "authenticated": auth.authenticated,
                "auth_method": auth.method,
                "capabilities": {
                    "supports_vision": provider.capabilities.supports_vision,
                    "supports_tools": provider.capabilities.supports_tools,
                    "streaming": provider.capabilities.streaming,
                },
                "installation": provider.installation_info(installation),
            }
        return result

    def refresh(self) -> None:
        """Forget cached detection results."""
        with self._lock:
            self._installations.clear()
            self._auth.clear()
