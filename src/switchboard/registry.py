"""Namespace registry and the authorization rules built on it.

The registry is the only trusted source for "which conversation belongs to
which namespace". Mailbox payloads may name conversations or folders, but
every target is re-resolved here before anything is mutated.
"""

from __future__ import annotations

import logging

from switchboard.errors import AuthorizationViolation
from switchboard.models import Namespace, is_valid_folder

logger = logging.getLogger(__name__)


class NamespaceRegistry:
    """In-memory view of registered namespaces, backed by the store."""

    def __init__(self, store, privileged_folder: str = "main"):
        self.store = store
        self.privileged_folder = privileged_folder
        self._by_key: dict[str, Namespace] = {}

    def load(self) -> None:
        self._by_key = self.store.get_all_namespaces()
        logger.info("Loaded %d namespaces", len(self._by_key))

    def __len__(self) -> int:
        return len(self._by_key)

    def __contains__(self, conversation_key: str) -> bool:
        return conversation_key in self._by_key

    def all(self) -> list[Namespace]:
        return list(self._by_key.values())

    def conversation_keys(self) -> list[str]:
        return list(self._by_key)

    def get(self, conversation_key: str) -> Namespace | None:
        return self._by_key.get(conversation_key)

    def by_folder(self, folder: str) -> Namespace | None:
        for namespace in self._by_key.values():
            if namespace.folder == folder:
                return namespace
        return None

    def privileged(self) -> Namespace | None:
        return self.by_folder(self.privileged_folder)

    def is_privileged(self, folder: str) -> bool:
        return folder == self.privileged_folder

    def register(self, namespace: Namespace) -> Namespace:
        """Add or replace a namespace. Folder names are validated here."""
        if not is_valid_folder(namespace.folder):
            raise ValueError(f"Invalid namespace folder: {namespace.folder!r}")
        existing = self.by_folder(namespace.folder)
        if existing and existing.conversation_key != namespace.conversation_key:
            raise ValueError(f"Folder {namespace.folder!r} already belongs to {existing.conversation_key}")
        self.store.set_namespace(namespace)
        self._by_key[namespace.conversation_key] = namespace
        logger.info("Registered namespace %s (%s)", namespace.folder, namespace.conversation_key)
        return namespace

    # --- Authorization ---

    def authorize_conversation(self, source_folder: str, conversation_key: str) -> Namespace:
        """Resolve ``conversation_key`` to a namespace ``source_folder`` may address.

        Raises AuthorizationViolation for unknown conversations, and for
        conversations owned by another namespace unless the source is
        privileged.
        """
        target = self._by_key.get(conversation_key)
        if target is None:
            raise AuthorizationViolation(f"{source_folder} -> unregistered conversation {conversation_key}")
        if target.folder != source_folder and not self.is_privileged(source_folder):
            raise AuthorizationViolation(f"{source_folder} -> {target.folder}")
        return target

    def authorize_folder(self, source_folder: str, target_folder: str) -> Namespace:
        target = self.by_folder(target_folder)
        if target is None:
            raise AuthorizationViolation(f"{source_folder} -> unregistered namespace {target_folder}")
        if target.folder != source_folder and not self.is_privileged(source_folder):
            raise AuthorizationViolation(f"{source_folder} -> {target_folder}")
        return target

    def authorize_owner(self, source_folder: str, owner_folder: str) -> None:
        if owner_folder != source_folder and not self.is_privileged(source_folder):
            raise AuthorizationViolation(f"{source_folder} -> task owned by {owner_folder}")

    def require_privileged(self, source_folder: str, action: str) -> None:
        if not self.is_privileged(source_folder):
            raise AuthorizationViolation(f"{source_folder} attempted privileged action {action}")
