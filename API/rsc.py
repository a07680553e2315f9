"""
Client for the Rubrik Security Cloud control plane.

    import rsc

    client = rsc.Client.from_env()
    view = client.azure.subscriptions(rsc.Context.background())
    print(view.to_json(indent=2))

Credentials come from a service account or a local user account, read from
the environment (and a `.env` file) or from the JSON files under ~/.rubrik/.
"""

import logging

import requests

from rsc_access import AccessAPI, Hierarchy, Permission, Role, User
from rsc_accounts import CloudAccount, FeatureName, Reconciliation, Tenant
from rsc_azure import AccountId, AzureAPI, SubscriptionId
from rsc_config import (
    DEFAULT_SERVICE_ACCOUNT_FILE,
    CredentialEnvironment,
    ServiceAccount,
    ServicePrincipal,
    UserAccount,
    expand_path,
)
from rsc_context import Context
from rsc_errors import (
    CanceledError,
    JobFailedError,
    NotFoundError,
    NotUniqueError,
    ProtocolError,
    RSCError,
    ValidationError,
)
from rsc_graphql import GraphQLClient, result
from rsc_log import TRACE, configure_logging
from rsc_tasks import DEFAULT_POLL_INTERVAL_S, TaskChainTracker
from rsc_token import ServiceAccountSource, TokenSource, UserSource

_VERSION = "0.1.0"

_LOG = logging.getLogger("rsc")

_DEPLOYMENT_VERSION_QUERY = """query RscDeploymentVersion {
    result: deploymentVersion
}"""

__all__ = [
    "AccessAPI",
    "AccountId",
    "CanceledError",
    "Client",
    "CloudAccount",
    "Context",
    "CredentialEnvironment",
    "FeatureName",
    "Hierarchy",
    "JobFailedError",
    "NotFoundError",
    "NotUniqueError",
    "Permission",
    "ProtocolError",
    "Reconciliation",
    "RSCError",
    "Role",
    "ServiceAccount",
    "ServicePrincipal",
    "SubscriptionId",
    "Tenant",
    "TRACE",
    "User",
    "UserAccount",
    "ValidationError",
    "configure_logging",
]


class Client:
    def __init__(
        self,
        api_url: str,
        token_source: TokenSource,
        *,
        session: requests.Session | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_S,
        logger: logging.Logger | None = None,
    ):
        self.session = session if session is not None else requests.Session()
        self.session.headers["User-Agent"] = f"rsc-python/{_VERSION}"
        self._log = logger or _LOG
        self.gql = GraphQLClient(api_url, token_source, session=self.session, logger=logger)
        self.tracker = TaskChainTracker(poll_interval, logger=logger)
        self.azure = AzureAPI(self.gql, self.tracker, logger=logger)
        self.access = AccessAPI(self.gql, logger=logger)
        self._log.info("RSC client for %s (version %s)", self.gql.api_url, _VERSION)

    @classmethod
    def from_service_account(cls, account: ServiceAccount, *, session=None, logger=None, **kwargs):
        if not account.api_url:
            account.validate()
        session = session if session is not None else requests.Session()
        tokens = TokenSource(ServiceAccountSource(session, account, logger=logger), logger=logger)
        return cls(account.api_url, tokens, session=session, logger=logger, **kwargs)

    @classmethod
    def from_user_account(cls, account: UserAccount, *, session=None, logger=None, **kwargs):
        if not account.api_url:
            account.validate()
        session = session if session is not None else requests.Session()
        tokens = TokenSource(UserSource(session, account, logger=logger), logger=logger)
        return cls(account.api_url, tokens, session=session, logger=logger, **kwargs)

    @classmethod
    def from_env(cls, env=None, **kwargs):
        """
        Build a client from the environment. A service account (variables,
        then file) is preferred over a local user account.
        RUBRIK_POLARIS_LOGLEVEL configures the "rsc" logger.
        """
        if env is None:
            env = CredentialEnvironment.from_process()
        level = env.get("RUBRIK_POLARIS_LOGLEVEL")
        if level:
            configure_logging(level)

        try:
            return cls.from_service_account(ServiceAccount.from_env(env), **kwargs)
        except NotFoundError:
            pass
        path = expand_path(env.get("RUBRIK_POLARIS_SERVICEACCOUNT_FILE", DEFAULT_SERVICE_ACCOUNT_FILE), env)
        if path.is_file():
            return cls.from_service_account(ServiceAccount.from_file(str(path), env=env), **kwargs)

        try:
            return cls.from_user_account(UserAccount.from_env(env), **kwargs)
        except NotFoundError:
            pass
        return cls.from_user_account(UserAccount.from_file(env=env), **kwargs)

    def deployment_version(self, ctx: Context) -> str:
        self._log.log(TRACE, "deployment_version()")
        version = result(self.gql.request(ctx, _DEPLOYMENT_VERSION_QUERY), "deploymentVersion")
        if not isinstance(version, str) or not version:
            raise ProtocolError("invalid deployment version", operation="deploymentVersion")
        return version

    def close(self) -> None:
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False
