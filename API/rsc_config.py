import hashlib
import json
import os
import threading
import urllib.parse
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import dotenv_values, find_dotenv

from rsc_errors import NotFoundError, ValidationError

DEFAULT_LOCAL_USER_FILE = "~/.rubrik/polaris-accounts.json"
DEFAULT_SERVICE_ACCOUNT_FILE = "~/.rubrik/polaris-service-account.json"

# Process environment is shared by every thread; reads go through this lock.
_ENV_LOCK = threading.Lock()


class CredentialEnvironment(Mapping):
    """
    Immutable snapshot of configuration values.

    Credential loaders take one of these instead of reading `os.environ`
    directly, so a caller can hand the client an explicit configuration.
    """

    def __init__(self, values: Mapping | None = None):
        self._values = {str(k): str(v) for k, v in (values or {}).items() if v is not None}

    @classmethod
    def from_process(cls, *, dotenv: bool = True, dotenv_path: str | None = None):
        # Values from the process environment win over values from `.env`.
        with _ENV_LOCK:
            values: dict[str, str] = {}
            if dotenv:
                path = dotenv_path or find_dotenv(usecwd=True)
                if path:
                    values.update({k: v for k, v in dotenv_values(path).items() if v is not None})
            values.update(os.environ)
        return cls(values)

    def __getitem__(self, key):
        return self._values[key]

    def __iter__(self):
        return iter(self._values)

    def __len__(self):
        return len(self._values)

    def __repr__(self) -> str:
        return f"CredentialEnvironment({len(self._values)} values)"


def expand_path(path: str, env: Mapping | None = None) -> Path:
    raw = str(path or "")
    if env is not None:
        # os.path.expandvars only looks at os.environ.
        for key in sorted(env.keys(), key=len, reverse=True):
            raw = raw.replace("${" + key + "}", env[key]).replace("$" + key, env[key])
    else:
        raw = os.path.expandvars(raw)
    return Path(raw).expanduser().resolve()


def _split_fqdn(url: str, what: str) -> tuple[str, str]:
    parsed = urllib.parse.urlparse(url or "")
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ValidationError(f"invalid {what}: {url!r}")
    fqdn = parsed.hostname
    if "." not in fqdn:
        raise ValidationError(f"invalid {what}: no account name found")
    return fqdn.split(".", 1)[0], fqdn


@dataclass
class ServiceAccount:
    name: str = ""
    client_id: str = ""
    client_secret: str = field(default="", repr=False)
    access_token_uri: str = ""

    account_name: str = field(default="", init=False)
    account_fqdn: str = field(default="", init=False)
    api_url: str = field(default="", init=False)
    token_url: str = field(default="", init=False)

    def validate(self):
        if not self.name:
            raise ValidationError("invalid service account name")
        if not self.client_id:
            raise ValidationError("invalid service account client id")
        if not self.client_secret:
            raise ValidationError("invalid service account client secret")

        self.account_name, self.account_fqdn = _split_fqdn(
            self.access_token_uri, "service account access token uri"
        )
        i = self.access_token_uri.rstrip("/").rfind("/")
        if i <= len("https://"):
            raise ValidationError("invalid service account access token uri: malformed path")
        self.api_url = self.access_token_uri[:i]
        self.token_url = self.access_token_uri
        return self

    @classmethod
    def _from_dict(cls, data: dict):
        if not isinstance(data, dict):
            raise ValidationError("service account must be a JSON object")
        return cls(
            name=str(data.get("name") or ""),
            client_id=str(data.get("client_id") or ""),
            client_secret=str(data.get("client_secret") or ""),
            access_token_uri=str(data.get("access_token_uri") or ""),
        )

    @classmethod
    def _env_overrides(cls, env: Mapping) -> dict:
        found = False
        data: dict = {}
        creds = env.get("RUBRIK_POLARIS_SERVICEACCOUNT_CREDENTIALS")
        if creds is not None:
            try:
                data = json.loads(creds)
            except ValueError as e:
                raise ValidationError(
                    f"failed to unmarshal RUBRIK_POLARIS_SERVICEACCOUNT_CREDENTIALS: {e}"
                ) from e
            if not isinstance(data, dict):
                raise ValidationError("RUBRIK_POLARIS_SERVICEACCOUNT_CREDENTIALS must be a JSON object")
            found = True
        for key, env_key in (
            ("name", "RUBRIK_POLARIS_SERVICEACCOUNT_NAME"),
            ("client_id", "RUBRIK_POLARIS_SERVICEACCOUNT_CLIENTID"),
            ("client_secret", "RUBRIK_POLARIS_SERVICEACCOUNT_CLIENTSECRET"),
            ("access_token_uri", "RUBRIK_POLARIS_SERVICEACCOUNT_ACCESSTOKENURI"),
        ):
            if env_key in env:
                data[key] = env[env_key]
                found = True
        if not found:
            raise NotFoundError("no service account in environment")
        return data

    @classmethod
    def from_env(cls, env: Mapping):
        return cls._from_dict(cls._env_overrides(env)).validate()

    @classmethod
    def from_file(cls, path: str = DEFAULT_SERVICE_ACCOUNT_FILE, env: Mapping | None = None):
        """
        Load a service account from a JSON file. When `env` is given, its
        values override the file and RUBRIK_POLARIS_SERVICEACCOUNT_FILE can
        redirect the file itself.
        """
        overrides: dict = {}
        if env is not None:
            try:
                overrides = cls._env_overrides(env)
            except NotFoundError:
                overrides = {}
            path = env.get("RUBRIK_POLARIS_SERVICEACCOUNT_FILE", path)

        # A broken file may still be completed by the environment.
        file_err = None
        data: dict = {}
        try:
            data = json.loads(expand_path(path, env).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            file_err = e
        account = cls._from_dict(data if isinstance(data, dict) else {})
        for key, value in overrides.items():
            if value and key in ("name", "client_id", "client_secret", "access_token_uri"):
                setattr(account, key, str(value))

        try:
            return account.validate()
        except ValidationError as e:
            if file_err is not None:
                raise ValidationError(f"{e.message} (service account file error: {file_err})") from e
            raise


@dataclass
class UserAccount:
    name: str = ""
    username: str = ""
    password: str = field(default="", repr=False)
    url: str = ""

    account_name: str = field(default="", init=False)
    account_fqdn: str = field(default="", init=False)
    api_url: str = field(default="", init=False)
    token_url: str = field(default="", init=False)

    def validate(self):
        if not self.name:
            raise ValidationError("invalid user account name")
        if not self.username:
            raise ValidationError("invalid user account username")
        if not self.password:
            raise ValidationError("invalid user account password")
        if not self.url:
            self.url = f"https://{self.name}.my.rubrik.com/api"

        self.account_name, self.account_fqdn = _split_fqdn(self.url, "url")
        self.api_url = self.url.rstrip("/")
        self.token_url = self.api_url + "/session"
        return self

    @classmethod
    def _lookup(cls, accounts: dict, name: str):
        if len(accounts) == 1:
            name = next(iter(accounts))
        data = accounts.get(name)
        if not isinstance(data, dict):
            data = {}
        return cls(
            name=name,
            username=str(data.get("username") or ""),
            password=str(data.get("password") or ""),
            url=str(data.get("url") or ""),
        )

    @classmethod
    def _from_env(cls, env: Mapping, name: str = ""):
        found = False
        accounts: dict = {}
        creds = env.get("RUBRIK_POLARIS_ACCOUNT_CREDENTIALS")
        if creds is not None:
            try:
                accounts = json.loads(creds)
            except ValueError as e:
                raise ValidationError(f"failed to unmarshal RUBRIK_POLARIS_ACCOUNT_CREDENTIALS: {e}") from e
            if not isinstance(accounts, dict):
                raise ValidationError("RUBRIK_POLARIS_ACCOUNT_CREDENTIALS must be a JSON object")
            found = True
        if "RUBRIK_POLARIS_ACCOUNT_NAME" in env:
            name = env["RUBRIK_POLARIS_ACCOUNT_NAME"]
            found = True
        account = cls._lookup(accounts, name)
        for attr, env_key in (
            ("username", "RUBRIK_POLARIS_ACCOUNT_USERNAME"),
            ("password", "RUBRIK_POLARIS_ACCOUNT_PASSWORD"),
            ("url", "RUBRIK_POLARIS_ACCOUNT_URL"),
        ):
            if env_key in env:
                setattr(account, attr, env[env_key])
                found = True
        if not found:
            raise NotFoundError("no user account in environment")
        return account

    @classmethod
    def from_env(cls, env: Mapping):
        return cls._from_env(env).validate()

    @classmethod
    def from_file(cls, path: str = DEFAULT_LOCAL_USER_FILE, name: str = "", env: Mapping | None = None):
        env_account = None
        if env is not None:
            try:
                env_account = cls._from_env(env, name)
            except NotFoundError:
                env_account = None
            if env_account is not None and env_account.name:
                name = env_account.name
            path = env.get("RUBRIK_POLARIS_ACCOUNT_FILE", path)

        file_err = None
        accounts: dict = {}
        try:
            accounts = json.loads(expand_path(path, env).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            file_err = e
        if not isinstance(accounts, dict):
            accounts = {}
        if file_err is None and len(accounts) != 1 and name not in accounts:
            file_err = NotFoundError(f"failed to lookup user account {name!r}")
        account = cls._lookup(accounts, name)

        if env_account is not None:
            for attr in ("name", "username", "password", "url"):
                value = getattr(env_account, attr)
                if value:
                    setattr(account, attr, value)

        try:
            return account.validate()
        except ValidationError as e:
            if file_err is not None:
                raise ValidationError(f"{e.message} (user account file error: {file_err})") from e
            raise


def _principal_uuid(value, what: str) -> str:
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError, AttributeError):
        raise ValidationError(f"invalid service principal {what}: {value!r}") from None


def generate_app_name(app_id: str, tenant_id: str) -> str:
    """Stable app name for principals stored without one."""
    return "app-" + hashlib.sha224(f"{app_id}{tenant_id}".encode()).hexdigest()


# Key file layouts, newest first. Unknown keys reject a layout.
_KEY_FILE_LAYOUTS = (
    {"appId": "app_id", "appName": "app_name", "appSecret": "app_secret", "tenantId": "tenant_id"},
    {
        "appId": "app_id",
        "appName": "app_name",
        "appSecret": "app_secret",
        "tenantId": "tenant_id",
        "tenantDomain": "tenant_domain",
    },
    {
        "app_id": "app_id",
        "app_name": "app_name",
        "app_secret": "app_secret",
        "tenant_id": "tenant_id",
        "tenant_domain": "tenant_domain",
    },
)


@dataclass(frozen=True)
class ServicePrincipal:
    """Azure app registration RSC uses to reach the customer tenant."""

    app_id: str
    tenant_id: str
    tenant_domain: str
    app_secret: str = field(default="", repr=False)
    app_name: str = ""

    def __post_init__(self):
        object.__setattr__(self, "app_id", _principal_uuid(self.app_id, "app id"))
        object.__setattr__(self, "tenant_id", _principal_uuid(self.tenant_id, "tenant id"))
        if not self.tenant_domain:
            raise ValidationError("invalid service principal tenant domain")
        if not self.app_secret:
            raise ValidationError("invalid service principal app secret")
        if not self.app_name:
            object.__setattr__(self, "app_name", generate_app_name(self.app_id, self.tenant_id))

    @classmethod
    def from_key_file(cls, path: str, tenant_domain: str, env: Mapping | None = None):
        try:
            data = json.loads(expand_path(path, env).read_text(encoding="utf-8"))
        except OSError as e:
            raise NotFoundError(f"failed to read service principal key file: {e}") from e
        except ValueError as e:
            raise ValidationError(f"failed to unmarshal service principal key file: {e}") from e
        if not isinstance(data, dict):
            raise ValidationError("service principal key file must be a JSON object")

        for layout in _KEY_FILE_LAYOUTS:
            if set(data) <= set(layout):
                values = {attr: str(data.get(key) or "") for key, attr in layout.items()}
                break
        else:
            raise ValidationError(f"unrecognized service principal key file format: {path}")

        file_domain = values.pop("tenant_domain", "")
        if file_domain and file_domain != tenant_domain:
            raise ValidationError(f"tenant domain mismatch: {tenant_domain} != {file_domain}")
        return cls(tenant_domain=tenant_domain, **values)

    @classmethod
    def from_sdk_auth_file(cls, path: str, tenant_domain: str, env: Mapping | None = None):
        """Load the principal from an Azure SDK auth file (`az ad sp create-for-rbac --sdk-auth`)."""
        try:
            data = json.loads(expand_path(path, env).read_text(encoding="utf-8"))
        except OSError as e:
            raise NotFoundError(f"failed to read Azure auth file: {e}") from e
        except ValueError as e:
            raise ValidationError(f"failed to unmarshal Azure auth file: {e}") from e
        if not isinstance(data, dict):
            raise ValidationError("Azure auth file must be a JSON object")
        return cls(
            app_id=str(data.get("clientId") or ""),
            tenant_id=str(data.get("tenantId") or ""),
            tenant_domain=tenant_domain,
            app_secret=str(data.get("clientSecret") or ""),
        )

    @classmethod
    def from_env(cls, env: Mapping, tenant_domain: str):
        """
        AZURE_AUTH_LOCATION (SDK auth file) wins over
        AZURE_SERVICEPRINCIPAL_LOCATION (key file), which wins over the
        AZURE_CLIENT_ID, AZURE_CLIENT_SECRET and AZURE_TENANT_ID variables.
        """
        if env.get("AZURE_AUTH_LOCATION"):
            return cls.from_sdk_auth_file(env["AZURE_AUTH_LOCATION"], tenant_domain, env)
        if env.get("AZURE_SERVICEPRINCIPAL_LOCATION"):
            return cls.from_key_file(env["AZURE_SERVICEPRINCIPAL_LOCATION"], tenant_domain, env)
        if not env.get("AZURE_CLIENT_ID"):
            raise NotFoundError("no Azure service principal in environment")
        return cls(
            app_id=env.get("AZURE_CLIENT_ID", ""),
            tenant_id=env.get("AZURE_TENANT_ID", ""),
            tenant_domain=tenant_domain,
            app_secret=env.get("AZURE_CLIENT_SECRET", ""),
        )
