"""
Environment inheritance — which environment in a chain defines a key.

Environments form a forest through ``parent_id``. Everything here is resolved
through the store on demand by id; nothing holds live references between
environments, so the forest can change between calls.

Precedence is "nearest definer wins": a key set in a child always shadows the
same key in any ancestor, regardless of which was edited last.
"""

from __future__ import annotations

import logging

from lockbox.errors import CircularInheritanceError, InheritanceDepthError, NotFoundError
from lockbox.models import Environment, MergedSecret, Secret
from lockbox.store import SQLiteStore

logger = logging.getLogger(__name__)

MAX_INHERITANCE_DEPTH = 10


def _merged(secret: Secret, source: Environment, queried_id: str) -> MergedSecret:
    return MergedSecret(
        id=secret.id,
        environment_id=secret.environment_id,
        key=secret.key,
        encrypted_value=secret.encrypted_value,
        nonce=secret.nonce,
        version=secret.version,
        created_at=secret.created_at,
        updated_at=secret.updated_at,
        source_env_id=source.id,
        source_env_name=source.name,
        is_inherited=source.id != queried_id,
    )


class InheritanceResolver:
    def __init__(self, store: SQLiteStore) -> None:
        self.store = store

    def _require(self, env_id: str) -> Environment:
        env = self.store.get_environment(env_id)
        if env is None:
            raise NotFoundError(f"environment {env_id} not found")
        return env

    def ancestors(self, env_id: str) -> list[Environment]:
        """Ancestors from nearest parent to the root.

        Raises CircularInheritanceError if an id comes around again, and
        InheritanceDepthError if more than MAX_INHERITANCE_DEPTH ancestors
        exist without reaching a root.
        """
        current = self._require(env_id)
        visited = {current.id}
        chain: list[Environment] = []

        while current.parent_id is not None:
            if current.parent_id in visited:
                raise CircularInheritanceError(current.parent_id)
            if len(chain) >= MAX_INHERITANCE_DEPTH:
                raise InheritanceDepthError(env_id, MAX_INHERITANCE_DEPTH)
            parent = self.store.get_environment(current.parent_id)
            if parent is None:
                logger.warning(
                    "Environment %s points at missing parent %s", current.id, current.parent_id
                )
                break
            visited.add(parent.id)
            chain.append(parent)
            current = parent

        return chain

    def children(self, env_id: str) -> list[Environment]:
        return self.store.list_children(env_id)

    def chain(self, env_id: str) -> list[Environment]:
        """The environment itself followed by its ancestors."""
        env = self._require(env_id)
        return [env, *self.ancestors(env_id)]

    def resolve_secret(self, env_id: str, key: str) -> MergedSecret:
        env = self._require(env_id)
        local = self.store.get_secret(env.id, key)
        if local is not None:
            return _merged(local, env, env.id)

        for ancestor in self.ancestors(env.id):
            secret = self.store.get_secret(ancestor.id, key)
            if secret is not None:
                return _merged(secret, ancestor, env.id)

        raise NotFoundError(f"secret '{key}' not found in '{env.name}' or its parents")

    def resolve_all(self, env_id: str) -> list[MergedSecret]:
        """Every key visible from the environment, sorted by key."""
        chain = self.chain(env_id)
        definers: dict[str, tuple[Secret, Environment]] = {}
        # Farthest ancestor first so nearer definitions overwrite.
        for env in reversed(chain):
            for secret in self.store.list_secrets(env.id):
                definers[secret.key] = (secret, env)

        return [
            _merged(secret, source, env_id)
            for secret, source in (definers[key] for key in sorted(definers))
        ]
