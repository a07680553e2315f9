import logging
import uuid
from dataclasses import dataclass

from rsc_accounts import (
    Cloud,
    CloudAccount,
    FeatureName,
    FeatureStatus,
    RawSnapshot,
    Reconciliation,
    reconcile,
)
from rsc_config import ServicePrincipal
from rsc_context import Context
from rsc_errors import ApiRequestError, NotFoundError, NotUniqueError, ProtocolError, ValidationError
from rsc_graphql import result
from rsc_log import TRACE
from rsc_tasks import TaskChainStatusCheck, TaskChainTracker

_LOG = logging.getLogger("rsc.azure")

# The tenant queries take exactly one feature; ALL expands to these.
ALL_FEATURES = (
    FeatureName.CLOUD_NATIVE_ARCHIVAL,
    FeatureName.CLOUD_NATIVE_PROTECTION,
    FeatureName.EXOCOMPUTE,
)

_ALL_TENANTS_QUERY = """query RscAllAzureCloudAccountTenants($feature: CloudAccountFeature!, $includeSubscriptionDetails: Boolean!) {
    result: allAzureCloudAccountTenants(feature: $feature, includeSubscriptionDetails: $includeSubscriptionDetails) {
        cloudType
        azureCloudAccountTenantRubrikId
        domainName
    }
}"""

_TENANT_QUERY = """query RscAzureCloudAccountTenant($tenantId: UUID!, $feature: CloudAccountFeature!, $subscriptionSearchText: String!) {
    result: azureCloudAccountTenant(tenantId: $tenantId, feature: $feature, subscriptionSearchText: $subscriptionSearchText, subscriptionStatusFilters: []) {
        cloudType
        azureCloudAccountTenantRubrikId
        clientId
        appName
        domainName
        subscriptions {
            id
            name
            nativeId
            featureDetail {
                feature
                status
                regions
                resourceGroup {
                    name
                    nativeId
                    region
                    tags {
                        key
                        value
                    }
                }
                userAssignedManagedIdentity {
                    name
                    nativeId
                    principalId
                }
            }
        }
    }
}"""

_PERMISSION_CONFIG_QUERY = """query RscAzureCloudAccountPermissionConfig($feature: CloudAccountFeature!) {
    result: azureCloudAccountPermissionConfig(feature: $feature) {
        permissionVersion
    }
}"""

_ADD_ACCOUNT_QUERY = """mutation RscAddAzureCloudAccountWithoutOauth($tenantDomainName: String!, $azureCloudType: AzureCloudType!, $regions: [AzureCloudAccountRegion!]!, $feature: AddAzureCloudAccountFeatureInputWithoutOauth!, $subscriptionName: String!, $subscriptionId: String!) {
    result: addAzureCloudAccountWithoutOauth(input: {
        tenantDomainName: $tenantDomainName,
        azureCloudType:   $azureCloudType,
        subscriptions: {
            subscription: {
                name:     $subscriptionName,
                nativeId: $subscriptionId
            }
            features: [$feature]
        },
        regions:          $regions,
    }) {
        tenantId
        status {
            azureSubscriptionRubrikId
            azureSubscriptionNativeId
            error
        }
    }
}"""

_NATIVE_SUBSCRIPTIONS_QUERY = """query RscAzureNativeSubscriptions($after: String, $filter: String!) {
    result: azureNativeSubscriptions(after: $after, subscriptionFilters: {
        nameSubstringFilter: {
            nameSubstring: $filter
        }
    }) {
        edges {
            node {
                id
                azureSubscriptionNativeId
                name
            }
        }
        pageInfo {
            endCursor
            hasNextPage
        }
    }
}"""

_DISABLE_PROTECTION_QUERY = """mutation RscStartDisableAzureNativeSubscriptionProtectionJob($azureSubscriptionRubrikId: UUID!, $shouldDeleteNativeSnapshots: Boolean!, $azureNativeProtectionFeature: AzureNativeProtectionFeature!) {
    result: startDisableAzureNativeSubscriptionProtectionJob(input: {
        azureSubscriptionRubrikId:    $azureSubscriptionRubrikId,
        shouldDeleteNativeSnapshots:  $shouldDeleteNativeSnapshots,
        azureNativeProtectionFeature: $azureNativeProtectionFeature,
    }) {
        jobId
    }
}"""

_DELETE_ACCOUNT_QUERY = """mutation RscDeleteAzureCloudAccountWithoutOauth($subscriptionIds: [UUID!]!, $features: [CloudAccountFeature!]!) {
    result: deleteAzureCloudAccountWithoutOauth(input: {
        azureSubscriptionRubrikIds: $subscriptionIds
        features:                   $features,
    }) {
        status {
            azureSubscriptionNativeId
            isSuccess
            error
        }
    }
}"""

_UPDATE_ACCOUNT_QUERY = """mutation RscUpdateAzureCloudAccount($features: [CloudAccountFeature!]!, $regionsToAdd: [AzureCloudAccountRegion!], $regionsToRemove: [AzureCloudAccountRegion!], $subscriptions: [AzureCloudAccountSubscriptionInput!]!) {
    result: updateAzureCloudAccount(input: {
        features:        $features,
        regionsToAdd:    $regionsToAdd,
        regionsToRemove: $regionsToRemove,
        subscriptions:   $subscriptions
    }) {
        status {
            azureSubscriptionNativeId
            isSuccess
        }
    }
}"""


_SET_APP_CREDENTIALS_QUERY = """mutation RscSetAzureCloudAccountCustomerAppCredentials($azureCloudType: AzureCloudType!, $appId: String!, $appName: String, $appTenantId: String, $appSecretKey: String, $tenantDomainName: String) {
    result: setAzureCloudAccountCustomerAppCredentials(input: {
        azureCloudType:   $azureCloudType,
        appId:            $appId,
        appName:          $appName,
        appTenantId:      $appTenantId,
        appSecretKey:     $appSecretKey,
        tenantDomainName: $tenantDomainName
    })
}"""


def _uuid(value, what: str) -> str:
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError, AttributeError):
        raise ValidationError(f"invalid {what}: {value!r}") from None


@dataclass(frozen=True)
class AccountId:
    """Control-plane id of a cloud account."""

    id: str

    def __post_init__(self):
        object.__setattr__(self, "id", _uuid(self.id, "cloud account id"))


@dataclass(frozen=True)
class SubscriptionId:
    """Native Azure subscription id."""

    id: str

    def __post_init__(self):
        object.__setattr__(self, "id", _uuid(self.id, "subscription id"))


def _wire_regions(regions) -> list[str]:
    return sorted({str(r).strip().upper() for r in (regions or []) if str(r).strip()})


def _statuses(payload, operation: str) -> list[dict]:
    status = payload.get("status") if isinstance(payload, dict) else None
    if not isinstance(status, list) or not all(isinstance(s, dict) for s in status):
        raise ProtocolError("response has no status list", operation=operation)
    return status


class AzureAPI:
    """
    Azure subscription management on top of a RequestExecutor.

    Reads go through the tenant queries, one per feature, and are merged by
    the account reconciler. Removing cloud native protection runs a task
    chain on the control plane and waits for it through the tracker.
    """

    def __init__(self, executor, tracker: TaskChainTracker | None = None, logger: logging.Logger | None = None):
        self.executor = executor
        self.tracker = tracker or TaskChainTracker()
        self._log = logger or _LOG

    def _request(self, ctx: Context, query: str, variables: dict, operation: str):
        buf = self.executor.request(ctx, query, variables)
        return result(buf, operation)

    def _tenant_ids(self, ctx: Context, feature: FeatureName) -> list[str]:
        payload = self._request(
            ctx,
            _ALL_TENANTS_QUERY,
            {"feature": feature.value, "includeSubscriptionDetails": False},
            "allAzureCloudAccountTenants",
        )
        if not isinstance(payload, list):
            raise ProtocolError("tenant list is not an array", operation="allAzureCloudAccountTenants")
        ids = []
        for item in payload:
            if not isinstance(item, dict) or not item.get("azureCloudAccountTenantRubrikId"):
                raise ProtocolError(f"invalid tenant: {item!r}", operation="allAzureCloudAccountTenants")
            ids.append(str(item["azureCloudAccountTenantRubrikId"]))
        return ids

    def tenant_snapshot(self, ctx: Context, feature, filter: str = "") -> RawSnapshot:
        """All tenants and their accounts, as reported for a single feature."""
        feature = FeatureName.parse(feature)
        if feature is FeatureName.ALL:
            raise ValidationError("tenant snapshots are per feature; ALL is not supported")
        self._log.log(TRACE, "tenant_snapshot(feature=%s, filter=%r)", feature.value, filter)

        tenants = []
        for tenant_id in self._tenant_ids(ctx, feature):
            tenants.append(
                self._request(
                    ctx,
                    _TENANT_QUERY,
                    {"tenantId": tenant_id, "feature": feature.value, "subscriptionSearchText": filter},
                    "azureCloudAccountTenant",
                )
            )
        try:
            return RawSnapshot.from_result(feature, tenants)
        except ProtocolError as e:
            raise e.wrap("tenant snapshot", feature=feature.value) from e

    def subscriptions(self, ctx: Context, feature=FeatureName.ALL, filter: str = "") -> Reconciliation:
        """
        Tenants and accounts with the given feature, or with any supported
        feature when `feature` is ALL. `filter` matches subscription names
        and native ids.
        """
        feature = FeatureName.parse(feature)
        self._log.log(TRACE, "subscriptions(feature=%s, filter=%r)", feature.value, filter)
        features = ALL_FEATURES if feature is FeatureName.ALL else (feature,)
        return reconcile(self.tenant_snapshot(ctx, f, filter) for f in features)

    def subscription(self, ctx: Context, identity, feature=FeatureName.ALL) -> CloudAccount:
        self._log.log(TRACE, "subscription(%r, feature=%s)", identity, getattr(feature, "value", feature))
        if isinstance(identity, AccountId):
            for account in self.subscriptions(ctx, feature).accounts:
                if account.id == identity.id:
                    return account
        elif isinstance(identity, SubscriptionId):
            accounts = [
                a for a in self.subscriptions(ctx, feature, identity.id).accounts if a.native_id == identity.id
            ]
            if len(accounts) > 1:
                raise NotUniqueError("account is not unique", operation="subscription", subscription_id=identity.id)
            if accounts:
                return accounts[0]
        else:
            raise ValidationError(f"identity must be an AccountId or a SubscriptionId, got {identity!r}")

        raise NotFoundError(
            "account not found",
            operation="subscription",
            id=identity.id,
            feature=FeatureName.parse(feature).value,
        )

    def add_subscription(
        self,
        ctx: Context,
        subscription_id,
        tenant_domain: str,
        feature,
        regions,
        name: str | None = None,
        cloud=Cloud.AZURE_PUBLIC,
    ) -> str:
        """
        Add `feature` to the Azure subscription and return the control-plane
        account id. An account that already exists keeps its name.
        """
        native_id = SubscriptionId(subscription_id).id
        feature = FeatureName.parse(feature)
        if feature is FeatureName.ALL:
            raise ValidationError("add requires a single feature")
        if not tenant_domain:
            raise ValidationError("invalid tenant domain")
        if not regions:
            raise ValidationError("at least one region is required")
        self._log.log(TRACE, "add_subscription(%s, feature=%s)", native_id, feature.value)

        account = None
        try:
            account = self.subscription(ctx, SubscriptionId(native_id), FeatureName.ALL)
            name = account.name
        except NotFoundError:
            pass
        if not name:
            name = native_id

        perms = self._request(
            ctx, _PERMISSION_CONFIG_QUERY, {"feature": feature.value}, "azureCloudAccountPermissionConfig"
        )
        version = perms.get("permissionVersion") if isinstance(perms, dict) else None
        if not isinstance(version, int):
            raise ProtocolError("permission config has no version", operation="azureCloudAccountPermissionConfig")

        payload = self._request(
            ctx,
            _ADD_ACCOUNT_QUERY,
            {
                "tenantDomainName": tenant_domain,
                "azureCloudType": Cloud.parse(cloud).value,
                "regions": _wire_regions(regions),
                "feature": {"featureType": feature.value, "policyVersion": version},
                "subscriptionName": name,
                "subscriptionId": native_id,
            },
            "addAzureCloudAccountWithoutOauth",
        )
        status = (payload or {}).get("status") if isinstance(payload, dict) else None
        if not isinstance(status, list) or len(status) != 1:
            raise ProtocolError("add returned no status", operation="addAzureCloudAccountWithoutOauth")
        if status[0].get("error"):
            raise ApiRequestError(
                str(status[0]["error"]),
                operation="addAzureCloudAccountWithoutOauth",
                subscription_id=native_id,
                feature=feature.value,
            )

        if account is None:
            account = self.subscription(ctx, SubscriptionId(native_id), feature)
        self._log.info("Added %s to subscription %s (account %s)", feature.value, native_id, account.id)
        return account.id

    def _native_subscription_id(self, ctx: Context, account: CloudAccount) -> str:
        cursor = None
        while True:
            variables = {"filter": account.name}
            if cursor:
                variables["after"] = cursor
            payload = self._request(ctx, _NATIVE_SUBSCRIPTIONS_QUERY, variables, "azureNativeSubscriptions")
            if not isinstance(payload, dict):
                raise ProtocolError("invalid native subscriptions page", operation="azureNativeSubscriptions")
            for edge in payload.get("edges") or []:
                node = (edge or {}).get("node") or {}
                if node.get("azureSubscriptionNativeId") == account.native_id and node.get("id"):
                    return str(node["id"])
            page = payload.get("pageInfo") or {}
            if not page.get("hasNextPage"):
                break
            cursor = page.get("endCursor")

        raise NotFoundError(
            "native subscription not found",
            operation="azureNativeSubscriptions",
            account_id=account.id,
        )

    def remove_subscription(self, ctx: Context, identity, feature, delete_snapshots: bool = False) -> None:
        """
        Remove `feature` from the account. Cloud native protection is first
        disabled through a task chain; the feature is only deleted after the
        task chain succeeds.
        """
        feature = FeatureName.parse(feature)
        if feature is FeatureName.ALL:
            raise ValidationError("remove requires a single feature")
        self._log.log(TRACE, "remove_subscription(%r, feature=%s)", identity, feature.value)

        account = self.subscription(ctx, identity, feature)
        current = account.feature(feature)
        if current is None:
            raise NotFoundError("feature not found", operation="remove subscription", account_id=account.id)

        if feature is FeatureName.CLOUD_NATIVE_PROTECTION and current.status is not FeatureStatus.DISABLED:
            native_id = self._native_subscription_id(ctx, account)
            payload = self._request(
                ctx,
                _DISABLE_PROTECTION_QUERY,
                {
                    "azureSubscriptionRubrikId": native_id,
                    "shouldDeleteNativeSnapshots": bool(delete_snapshots),
                    "azureNativeProtectionFeature": "VM_AND_MANAGED_DISK",
                },
                "startDisableAzureNativeSubscriptionProtectionJob",
            )
            job_id = (payload or {}).get("jobId") if isinstance(payload, dict) else None
            if not job_id:
                raise ProtocolError(
                    "disable protection returned no job id",
                    operation="startDisableAzureNativeSubscriptionProtectionJob",
                )
            self._log.debug("Disabling protection for account %s (job: %s)", account.id, job_id)
            self.tracker.wait_for_completion(ctx, TaskChainStatusCheck(self.executor, job_id))

        payload = self._request(
            ctx,
            _DELETE_ACCOUNT_QUERY,
            {"subscriptionIds": [account.id], "features": [feature.value]},
            "deleteAzureCloudAccountWithoutOauth",
        )
        for status in _statuses(payload, "deleteAzureCloudAccountWithoutOauth"):
            if not status.get("isSuccess"):
                raise ApiRequestError(
                    str(status.get("error") or "delete failed"),
                    operation="deleteAzureCloudAccountWithoutOauth",
                    account_id=account.id,
                    feature=feature.value,
                )
        self._log.info("Removed %s from account %s", feature.value, account.id)

    def _update(self, ctx: Context, account: CloudAccount, feature: FeatureName, name: str, add, remove):
        payload = self._request(
            ctx,
            _UPDATE_ACCOUNT_QUERY,
            {
                "features": [feature.value],
                "regionsToAdd": _wire_regions(add),
                "regionsToRemove": _wire_regions(remove),
                "subscriptions": [{"id": account.id, "name": name}],
            },
            "updateAzureCloudAccount",
        )
        for status in _statuses(payload, "updateAzureCloudAccount"):
            if not status.get("isSuccess"):
                raise ApiRequestError(
                    "update failed",
                    operation="updateAzureCloudAccount",
                    account_id=account.id,
                    feature=feature.value,
                )

    def update_subscription(self, ctx: Context, identity, feature, name: str | None = None, regions=None) -> None:
        """
        Rename the account and/or replace the regions of `feature`. With
        feature ALL the regions of every feature on the account are replaced.
        """
        if not name and not regions:
            raise ValidationError("nothing to update")
        feature = FeatureName.parse(feature)
        self._log.log(TRACE, "update_subscription(%r, feature=%s)", identity, feature.value)

        account = self.subscription(ctx, identity, feature)
        if not account.features:
            raise NotFoundError("feature not found", operation="update subscription", account_id=account.id)
        name = name or account.name

        if not regions:
            self._update(ctx, account, account.features[0].name, name, [], [])
            return

        wanted = {str(r).strip().lower() for r in regions}
        for current in account.features:
            if feature is not FeatureName.ALL and current.name is not feature:
                continue
            add = wanted - set(current.regions)
            remove = set(current.regions) - wanted
            self._update(ctx, account, current.name, name, add, remove)

    def set_service_principal(self, ctx: Context, principal: ServicePrincipal, cloud=Cloud.AZURE_PUBLIC) -> str:
        """
        Register the app RSC uses to reach the customer's Azure tenant and
        return its app id. A principal cannot be removed once set, only
        replaced.
        """
        if not isinstance(principal, ServicePrincipal):
            raise ValidationError(f"principal must be a ServicePrincipal, got {type(principal).__name__}")
        self._log.log(TRACE, "set_service_principal(%s, tenant=%s)", principal.app_id, principal.tenant_domain)

        payload = self._request(
            ctx,
            _SET_APP_CREDENTIALS_QUERY,
            {
                "azureCloudType": Cloud.parse(cloud).value,
                "appId": principal.app_id,
                "appName": principal.app_name,
                "appTenantId": principal.tenant_id,
                "appSecretKey": principal.app_secret,
                "tenantDomainName": principal.tenant_domain,
            },
            "setAzureCloudAccountCustomerAppCredentials",
        )
        if payload is not True:
            raise ApiRequestError(
                "failed to set service principal",
                operation="setAzureCloudAccountCustomerAppCredentials",
                app_id=principal.app_id,
            )
        self._log.info("Set service principal %s for %s", principal.app_id, principal.tenant_domain)
        return principal.app_id
