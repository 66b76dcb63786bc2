from __future__ import annotations

"""Provider handle registry.

The registry maps a provider id to the executable object that implements it
(a function, a factory or an object exposing the capability interface).

Handles are registered once, together with the provider record, so a
``Binding`` can be turned into something callable without loading code by
path at resolution time.
"""

from typing import Any, Dict, Optional

from .schemas.domain import Binding


class ProviderHandleRegistry:
    """
    In-memory mapping of provider ids to implementations.

    Notes:
        - ``register`` overwrites any existing mapping for the provider id.
        - ``get`` will raise ``KeyError`` if the provider has no handle.
    """

    def __init__(self) -> None:
        """Initialize an empty handle registry."""
        self._handles: Dict[str, Any] = {}

    def register(self, provider_id: str, handle: Any) -> None:
        """
        Register the implementation of a provider.

        Args:
            provider_id: The provider record id.
            handle: The implementation (callable, factory or object).
        """
        self._handles[provider_id] = handle

    def unregister(self, provider_id: str) -> Optional[Any]:
        return self._handles.pop(provider_id, None)

    def get(self, provider_id: str) -> Any:
        """
        Retrieve the implementation of a provider.

        Args:
            provider_id: The provider record id.

        Returns:
            The registered handle.

        Raises:
            KeyError: If no handle is registered for the provider.
        """
        return self._handles[provider_id]

    def has(self, provider_id: str) -> bool:
        return provider_id in self._handles

    def for_binding(self, binding: Binding) -> Any:
        """Resolve the handle behind a binding (``KeyError`` if none)."""
        return self.get(binding.provider_id)

    def __len__(self) -> int:
        return len(self._handles)
