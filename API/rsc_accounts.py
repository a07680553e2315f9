import dataclasses
import enum
import json
import logging
from dataclasses import dataclass
from typing import NamedTuple

from rsc_errors import ProtocolError, ValidationError

_LOG = logging.getLogger("rsc.accounts")


class _WireEnum(enum.Enum):
    """String-backed enum that rejects unknown wire values."""

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        raw = str(value or "").strip().upper().replace("-", "_")
        try:
            return cls(raw)
        except ValueError:
            raise ProtocolError(f"invalid {cls.__name__}: {value!r}") from None

    def format(self) -> str:
        return self.value.lower().replace("_", "-")


class FeatureName(_WireEnum):
    # ALL is a query selector, never a feature attached to an account.
    ALL = "ALL"
    AZURE_SQL_DB_PROTECTION = "AZURE_SQL_DB_PROTECTION"
    AZURE_SQL_MI_PROTECTION = "AZURE_SQL_MI_PROTECTION"
    CLOUD_NATIVE_ARCHIVAL = "CLOUD_NATIVE_ARCHIVAL"
    CLOUD_NATIVE_ARCHIVAL_ENCRYPTION = "CLOUD_NATIVE_ARCHIVAL_ENCRYPTION"
    CLOUD_NATIVE_BLOB_PROTECTION = "CLOUD_NATIVE_BLOB_PROTECTION"
    CLOUD_NATIVE_PROTECTION = "CLOUD_NATIVE_PROTECTION"
    EXOCOMPUTE = "EXOCOMPUTE"
    KUBERNETES_PROTECTION = "KUBERNETES_PROTECTION"
    SERVERS_AND_APPS = "SERVERS_AND_APPS"


class FeatureStatus(_WireEnum):
    CONNECTED = "CONNECTED"
    CONNECTING = "CONNECTING"
    DISABLED = "DISABLED"
    DISCONNECTED = "DISCONNECTED"
    MISSING_PERMISSIONS = "MISSING_PERMISSIONS"


class Cloud(_WireEnum):
    AZURE_PUBLIC = "AZUREPUBLICCLOUD"
    AZURE_CHINA = "AZURECHINACLOUD"


@dataclass(frozen=True)
class ManagedIdentity:
    name: str
    native_id: str
    principal_id: str = ""


@dataclass(frozen=True)
class ResourceGroup:
    name: str
    native_id: str = ""
    region: str = ""
    tags: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class Feature:
    name: FeatureName
    status: FeatureStatus
    regions: tuple[str, ...] = ()
    resource_group: ResourceGroup | None = None
    managed_identity: ManagedIdentity | None = None

    def has_region(self, region: str) -> bool:
        return str(region).lower() in self.regions

    def sort_key(self) -> tuple[str, str]:
        return (self.name.value, ",".join(self.regions))


@dataclass(frozen=True)
class Tenant:
    id: str
    domain_name: str
    client_id: str = ""
    app_name: str = ""
    cloud: Cloud = Cloud.AZURE_PUBLIC
    subscription_count: int = 0


@dataclass(frozen=True)
class CloudAccount:
    id: str
    native_id: str
    name: str
    tenant_id: str
    tenant_domain: str = ""
    features: tuple[Feature, ...] = ()

    def feature(self, name) -> Feature | None:
        name = FeatureName.parse(name)
        for f in self.features:
            if f.name is name:
                return f
        return None


@dataclass(frozen=True)
class RawAccount:
    id: str
    native_id: str
    name: str
    feature: Feature


@dataclass(frozen=True)
class RawTenant:
    id: str
    domain_name: str
    client_id: str = ""
    app_name: str = ""
    cloud: Cloud = Cloud.AZURE_PUBLIC
    accounts: tuple[RawAccount, ...] = ()


@dataclass(frozen=True)
class RawSnapshot:
    """Backend view of every tenant and account for one requested feature."""

    feature: FeatureName
    tenants: tuple[RawTenant, ...] = ()

    @classmethod
    def from_result(cls, feature, result):
        feature = FeatureName.parse(feature)
        if feature is FeatureName.ALL:
            raise ValidationError("a snapshot holds exactly one feature, not ALL")
        if result is None:
            items = []
        elif isinstance(result, dict):
            items = [result]
        elif isinstance(result, list):
            items = result
        else:
            raise ProtocolError(f"unexpected tenant result type: {type(result).__name__}")
        return cls(feature=feature, tenants=tuple(_parse_tenant(t, feature) for t in items))


def _required(node: dict, key: str, what: str) -> str:
    value = node.get(key)
    if value in (None, ""):
        raise ProtocolError(f"{what} is missing {key!r}")
    return str(value)


def _parse_tags(items) -> tuple[tuple[str, str], ...]:
    tags = set()
    for item in items or []:
        if not isinstance(item, dict):
            raise ProtocolError(f"invalid tag: {item!r}")
        tags.add((str(item.get("key", "")), str(item.get("value", ""))))
    return tuple(sorted(tags))


def _parse_regions(items) -> tuple[str, ...]:
    return tuple(sorted({str(r).strip().lower() for r in (items or []) if str(r).strip()}))


def _parse_feature(node, default: FeatureName) -> Feature:
    if not isinstance(node, dict):
        raise ProtocolError("account is missing its feature detail")
    name = FeatureName.parse(node.get("feature") or default)
    if name is FeatureName.ALL:
        raise ProtocolError("account feature detail cannot be ALL")

    rg = node.get("resourceGroup")
    resource_group = None
    if isinstance(rg, dict) and rg.get("name"):
        resource_group = ResourceGroup(
            name=str(rg["name"]),
            native_id=str(rg.get("nativeId") or ""),
            region=str(rg.get("region") or "").lower(),
            tags=_parse_tags(rg.get("tags")),
        )

    mi = node.get("userAssignedManagedIdentity")
    managed_identity = None
    if isinstance(mi, dict) and mi.get("name"):
        managed_identity = ManagedIdentity(
            name=str(mi["name"]),
            native_id=str(mi.get("nativeId") or ""),
            principal_id=str(mi.get("principalId") or ""),
        )

    return Feature(
        name=name,
        status=FeatureStatus.parse(node.get("status")),
        regions=_parse_regions(node.get("regions")),
        resource_group=resource_group,
        managed_identity=managed_identity,
    )


def _parse_tenant(node, feature: FeatureName) -> RawTenant:
    if not isinstance(node, dict):
        raise ProtocolError(f"invalid tenant: {node!r}")
    tenant_id = _required(node, "azureCloudAccountTenantRubrikId", "tenant")
    accounts = []
    for item in node.get("subscriptions") or []:
        if not isinstance(item, dict):
            raise ProtocolError(f"invalid subscription in tenant {tenant_id}: {item!r}")
        accounts.append(
            RawAccount(
                id=_required(item, "id", "subscription"),
                native_id=_required(item, "nativeId", "subscription"),
                name=str(item.get("name") or ""),
                feature=_parse_feature(item.get("featureDetail"), feature),
            )
        )
    return RawTenant(
        id=tenant_id,
        domain_name=str(node.get("domainName") or ""),
        client_id=str(node.get("clientId") or ""),
        app_name=str(node.get("appName") or ""),
        cloud=Cloud.parse(node.get("cloudType") or Cloud.AZURE_PUBLIC),
        accounts=tuple(accounts),
    )


def _feature_key(f: Feature) -> tuple:
    rg = f.resource_group
    mi = f.managed_identity
    return (
        f.name.value,
        f.status.value,
        f.regions,
        (rg.name, rg.native_id, rg.region, rg.tags) if rg else (),
        (mi.name, mi.native_id, mi.principal_id) if mi else (),
    )


def _tenant_key(t: RawTenant) -> tuple:
    return (t.id, t.domain_name, t.client_id, t.app_name, t.cloud.value)


def _record_key(record: tuple[RawTenant, RawAccount]) -> tuple:
    # Total over the record content: overlapping snapshots that disagree
    # about an account still resolve the same way whatever their order.
    tenant, raw = record
    return (
        raw.feature.name.value,
        tenant.id,
        raw.id,
        raw.native_id,
        raw.name,
        _feature_key(raw.feature),
        _tenant_key(tenant),
    )


def _json_default(obj):
    if isinstance(obj, enum.Enum):
        return obj.value
    raise TypeError(f"{type(obj).__name__} is not JSON serializable")


class Reconciliation(NamedTuple):
    tenants: tuple[Tenant, ...]
    accounts: tuple[CloudAccount, ...]

    def as_dict(self) -> dict:
        return {
            "tenants": [dataclasses.asdict(t) for t in self.tenants],
            "accounts": [dataclasses.asdict(a) for a in self.accounts],
        }

    def to_json(self, *, indent: int | None = None) -> str:
        return json.dumps(self.as_dict(), default=_json_default, sort_keys=True, indent=indent)


class _AccountAccumulator:
    def __init__(self, raw: RawAccount, tenant: RawTenant):
        self.id = raw.id
        self.native_id = raw.native_id
        self.name = raw.name
        self.tenant_id = tenant.id
        self.tenant_domain = tenant.domain_name
        self.features: list[Feature] = []

    def has_feature(self, name: FeatureName) -> bool:
        return any(f.name is name for f in self.features)

    def freeze(self) -> CloudAccount:
        return CloudAccount(
            id=self.id,
            native_id=self.native_id,
            name=self.name,
            tenant_id=self.tenant_id,
            tenant_domain=self.tenant_domain,
            features=tuple(sorted(self.features, key=Feature.sort_key)),
        )


class CloudAccountReconciler:
    """
    Folds per-feature snapshots into one view of tenants and accounts.

    The backend is queried once per feature, so an account shows up once per
    feature it has, each time carrying only that feature. Accounts and tenants
    are keyed by their control-plane ids; the first occurrence supplies the
    metadata and later occurrences only contribute features not yet seen.
    Records are walked in a canonical order (feature name, tenant id, account
    id, then the rest of the record content) and the output is sorted, so any
    ordering of the same input produces identical output, even when two
    snapshots disagree about the same account.
    """

    def __init__(self, logger: logging.Logger | None = None):
        self._log = logger or _LOG

    def reconcile(self, snapshots) -> Reconciliation:
        tenants: dict[str, RawTenant] = {}
        accounts: dict[str, _AccountAccumulator] = {}

        raw_tenants = [t for snapshot in snapshots for t in snapshot.tenants]
        for raw_tenant in sorted(raw_tenants, key=_tenant_key):
            tenants.setdefault(raw_tenant.id, raw_tenant)

        records = sorted(((t, a) for t in raw_tenants for a in t.accounts), key=_record_key)
        for raw_tenant, raw in records:
            acc = accounts.get(raw.id)
            if acc is None:
                acc = _AccountAccumulator(raw, tenants[raw_tenant.id])
                accounts[raw.id] = acc
            elif acc.tenant_id != raw_tenant.id:
                self._log.warning(
                    "Account %s reported under tenant %s, keeping tenant %s",
                    raw.id,
                    raw_tenant.id,
                    acc.tenant_id,
                )

            if acc.has_feature(raw.feature.name):
                self._log.debug("Account %s: skipping duplicate feature %s", raw.id, raw.feature.name.value)
                continue
            acc.features.append(raw.feature)

        counts: dict[str, int] = {}
        for acc in accounts.values():
            counts[acc.tenant_id] = counts.get(acc.tenant_id, 0) + 1

        out_tenants = tuple(
            sorted(
                (
                    Tenant(
                        id=t.id,
                        domain_name=t.domain_name,
                        client_id=t.client_id,
                        app_name=t.app_name,
                        cloud=t.cloud,
                        subscription_count=counts.get(t.id, 0),
                    )
                    for t in tenants.values()
                ),
                key=lambda t: (t.domain_name, t.id),
            )
        )
        out_accounts = tuple(
            sorted(
                (acc.freeze() for acc in accounts.values()),
                key=lambda a: (a.name, a.native_id, a.id),
            )
        )
        return Reconciliation(tenants=out_tenants, accounts=out_accounts)


def reconcile(snapshots) -> Reconciliation:
    return CloudAccountReconciler().reconcile(snapshots)
