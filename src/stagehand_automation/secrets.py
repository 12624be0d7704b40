from __future__ import annotations

import base64
import json
import logging
import threading
from typing import Any, Optional

try:  # pragma: no cover
    import boto3  # type: ignore
except Exception:  # pragma: no cover
    boto3 = None

from .errors import StagehandError

logger = logging.getLogger(__name__)


class SecretError(StagehandError):
    """Raised when a secret reference cannot be resolved."""


def contains_secrets(value: Any) -> bool:
    if isinstance(value, dict):
        return "aws_secret" in value or any(contains_secrets(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_secrets(v) for v in value)
    return False


class SecretResolver:
    """Replaces ``{aws_secret: name, key: field}`` references in variables.

    Values are fetched from AWS Secrets Manager once per run and cached;
    host workers share one resolver, so the cache is guarded by a lock.
    """

    def __init__(self, client=None):
        self._client = client
        self._cache: dict[tuple[str, Optional[str]], Any] = {}
        self._lock = threading.Lock()

    def resolve(self, values: dict[str, Any]) -> dict[str, Any]:
        return {k: self._resolve_value(v) for k, v in values.items()}

    def _resolve_value(self, value: Any) -> Any:
        if isinstance(value, dict):
            if "aws_secret" in value:
                return self._resolve_aws_secret(value)
            return {k: self._resolve_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve_value(v) for v in value]
        return value

    def _secrets_client(self):
        if self._client is None:
            if boto3 is None:
                raise SecretError("boto3 is required to resolve aws_secret references")
            self._client = boto3.client("secretsmanager")
        return self._client

    def _resolve_aws_secret(self, spec: dict[str, Any]) -> Any:
        name = str(spec["aws_secret"])
        key = spec.get("key")
        cache_key = (name, key if key is None else str(key))
        with self._lock:
            if cache_key in self._cache:
                return self._cache[cache_key]

            logger.debug("secret lookup name=%s key=%s", name, key)
            response = self._secrets_client().get_secret_value(SecretId=name)
            secret_str = response.get("SecretString")
            if secret_str is None:
                binary = response.get("SecretBinary")
                if binary is None:
                    raise SecretError(f"secret {name} has no SecretString or SecretBinary")
                secret_str = base64.b64decode(binary).decode()

            value: Any = secret_str
            if key is not None:
                try:
                    value = json.loads(secret_str)[str(key)]
                except (ValueError, KeyError) as exc:
                    raise SecretError(f"secret {name} has no JSON field '{key}'") from exc

            self._cache[cache_key] = value
            return value
