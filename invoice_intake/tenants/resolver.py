"""Tenant routing by filename prefix.

The prefix map is a JSON object keyed by filename prefix::

    {
      "acme": {
        "tenantId": "7b0c...",
        "taxId": "30-71215244-9",
        "bucket": "acme-invoices",
        "storageKeyPrefix": "acme"
      }
    }

It is read once and cached; ``invalidate_cache`` forces a re-read.
"""

import json
import threading
from pathlib import Path

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from invoice_intake.exceptions import ConfigInvalid, ConfigMissing
from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)


class TenantConfig(BaseModel):
    """Routing and storage settings for one tenant."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    prefix: str
    tenant_id: str = Field(validation_alias=AliasChoices("tenantId", "clienteId", "tenant_id"))
    tax_id: str = Field(
        default="", validation_alias=AliasChoices("taxId", "cuit", "tax_id")
    )
    bucket: str = Field(validation_alias=AliasChoices("bucket", "r2Bucket"))
    storage_key_prefix: str = Field(
        default="",
        validation_alias=AliasChoices("storageKeyPrefix", "r2Prefix", "storage_key_prefix"),
    )


class TenantResolver:
    """Loads the prefix map and answers tenant lookups.

    Args:
        path: Location of the prefix map JSON file.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._cache: dict[str, TenantConfig] | None = None
        self._lock = threading.Lock()

    def load(self, path: Path | str | None = None) -> dict[str, TenantConfig]:
        """Return the prefix map, reading it from disk on first use.

        Args:
            path: Override the configured path. Changing the path
                invalidates the cache.

        Raises:
            ConfigMissing: If the file does not exist.
            ConfigInvalid: If the file is not a valid prefix map.
        """
        with self._lock:
            if path is not None and Path(path) != self.path:
                self.path = Path(path)
                self._cache = None
            if self._cache is None:
                self._cache = self._read(self.path)
                logger.info(
                    "Loaded %d tenant prefixes from %s", len(self._cache), self.path
                )
            return self._cache

    def resolve(self, prefix: str) -> TenantConfig | None:
        """Look up a tenant by filename prefix."""
        return self.load().get(prefix)

    def for_tenant(self, tenant_id: str) -> TenantConfig | None:
        """Look up a tenant by id."""
        for tenant in self.load().values():
            if tenant.tenant_id == tenant_id:
                return tenant
        return None

    def tenants(self) -> list[TenantConfig]:
        """All configured tenants, in file order."""
        return list(self.load().values())

    def invalidate_cache(self) -> None:
        """Force the next lookup to re-read the prefix map."""
        with self._lock:
            self._cache = None

    @staticmethod
    def _read(path: Path) -> dict[str, TenantConfig]:
        if not path.exists():
            raise ConfigMissing(f"Prefix map file not found: {path}")
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigInvalid(f"Failed to load prefix map from {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigInvalid(f"Prefix map {path} must be a JSON object")

        tenants: dict[str, TenantConfig] = {}
        for prefix, entry in raw.items():
            if not isinstance(entry, dict):
                raise ConfigInvalid(f"Prefix map entry {prefix!r} must be an object")
            try:
                tenants[prefix] = TenantConfig(prefix=prefix, **entry)
            except (ValidationError, TypeError) as exc:
                raise ConfigInvalid(f"Invalid prefix map entry {prefix!r}: {exc}") from exc
        _check_shared_buckets(tenants)
        return tenants


def _check_shared_buckets(tenants: dict[str, TenantConfig]) -> None:
    """Tenants in one bucket need disjoint, non-empty storage prefixes.

    Otherwise one tenant's inbox listing would include the other's files.

    Raises:
        ConfigInvalid: If two tenants' key spaces overlap.
    """
    by_bucket: dict[str, list[TenantConfig]] = {}
    for tenant in tenants.values():
        by_bucket.setdefault(tenant.bucket, []).append(tenant)

    for bucket, members in by_bucket.items():
        if len(members) < 2:
            continue
        for tenant in members:
            if not tenant.storage_key_prefix.strip("/"):
                raise ConfigInvalid(
                    f"Tenant {tenant.prefix!r} shares bucket {bucket!r} "
                    "but has no storageKeyPrefix"
                )
        for tenant in members:
            own = tenant.storage_key_prefix.strip("/") + "/"
            for other in members:
                theirs = other.storage_key_prefix.strip("/") + "/"
                if other is not tenant and theirs.startswith(own):
                    raise ConfigInvalid(
                        f"Tenants {tenant.prefix!r} and {other.prefix!r} in bucket "
                        f"{bucket!r} have overlapping storage prefixes"
                    )
