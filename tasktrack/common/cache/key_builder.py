"""
Key Builder Module

This module provides utilities for creating standardized cache keys,
ensuring consistent key structure and handling complex parameters appropriately.

Single records use ``<entity>:<id>`` keys. Collection caches live under a bare
namespace (for example ``tasks``) with the full, canonically serialized query
parameters as the key, so distinct queries never collide and clearing the
namespace drops every cached list at once.
"""

import hashlib
import json
import re
from typing import Any, Callable, Dict, Optional, Sequence, Union

# Characters with a special meaning in Redis KEYS/SCAN patterns
_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")

class KeyBuilder:
    """
    Utility for building standardized cache keys.

    All methods are static; the class only groups the key conventions.
    """

    @staticmethod
    def build(*parts: Any, namespace: Optional[str] = None) -> str:
        """
        Build a cache key from parts.

        Args:
            *parts: Parts of the key, will be converted to strings and joined
            namespace: Optional namespace for the key

        Returns:
            A colon-separated key string
        """
        processed_parts = []

        if namespace:
            processed_parts.append(str(namespace))

        for part in parts:
            if part is None:
                processed_parts.append("null")
            elif isinstance(part, (int, float, bool, str)):
                processed_parts.append(str(part))
            elif isinstance(part, (dict, list, tuple)):
                # Complex types are hashed for consistency
                part_json = json.dumps(part, sort_keys=True, default=str)
                part_hash = hashlib.md5(part_json.encode()).hexdigest()[:10]
                processed_parts.append(part_hash)
            else:
                class_name = part.__class__.__name__
                str_value = str(part)
                if len(str_value) > 40:  # Truncate long strings
                    str_value = hashlib.md5(str_value.encode()).hexdigest()[:10]
                processed_parts.append(f"{class_name}:{str_value}")

        return ":".join(processed_parts)

    @staticmethod
    def function_key(
        func: Callable,
        args: Sequence[Any] = (),
        kwargs: Optional[Dict[str, Any]] = None,
        namespace: Optional[str] = None
    ) -> str:
        """
        Build a cache key for a function call.

        The call arguments are passed as a sequence and a dict, so any keyword
        argument name, ``namespace`` included, stays part of the key.

        Args:
            func: The function being called
            args: Positional arguments of the call
            kwargs: Keyword arguments of the call
            namespace: Optional namespace for the key

        Returns:
            A cache key for the function call
        """
        parts = [func.__module__, func.__qualname__]

        if args:
            parts.append("args")
            parts.extend(args)

        kwargs = kwargs or {}

        # Sorted for consistency
        if kwargs:
            parts.append("kwargs")
            for k, v in sorted(kwargs.items()):
                parts.append(k)
                parts.append(v)

        return KeyBuilder.build(*parts, namespace=namespace)

    @staticmethod
    def entity_key(entity_type: str, entity_id: Union[str, int]) -> str:
        """
        Build a cache key for a single entity, e.g. ``task:42``.

        Args:
            entity_type: Type of entity (e.g., 'task', 'user')
            entity_id: ID of the entity

        Returns:
            A cache key for the entity
        """
        return f"{entity_type}:{entity_id}"

    @staticmethod
    def query_key(namespace: str, params: Dict[str, Any]) -> str:
        """
        Build a cache key for a collection query, e.g. ``tasks:{"page": 1}``.

        Parameters are serialized with sorted keys so equal filters always map
        to the same key.

        Args:
            namespace: Collection namespace
            params: Full filter/query parameters

        Returns:
            A cache key for the query
        """
        return f"{namespace}:{json.dumps(params, sort_keys=True, default=str)}"

    @staticmethod
    def namespace_pattern(namespace: str) -> str:
        """
        Build the pattern matching every key of a namespace.

        Glob characters in the namespace are backslash-escaped so the pattern
        only matches that namespace.

        Args:
            namespace: Namespace to match

        Returns:
            A pattern for KEYS
        """
        return _GLOB_SPECIAL.sub(r"\\\1", namespace) + ":*"


class TaskCacheKeys:
    """Cache key conventions for task records."""

    NAMESPACE = "tasks"

    @staticmethod
    def single(task_id: Union[str, int]) -> str:
        """Key of a single cached task."""
        return KeyBuilder.entity_key("task", task_id)

    @staticmethod
    def listing(filters: Dict[str, Any]) -> str:
        """Key of a cached task listing for the given filters."""
        return KeyBuilder.query_key(TaskCacheKeys.NAMESPACE, filters)
