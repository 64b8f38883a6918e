from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, Optional

import msal  # type: ignore[import]
from msal_extensions import FilePersistence, PersistedTokenCache  # type: ignore[import]

from .config import AccountConfig, AppConfig, AzureConfig
from .errors import ErrorKind, TriageError
from .graph_client import GraphClient
from .utils import ensure_dir, load_env_file, save_json, utc_now

logger = logging.getLogger("inbox_sweep.auth")

RESERVED_SCOPES = {"openid", "profile", "offline_access"}


def _build_cache(cache_path: Path) -> PersistedTokenCache:
    persistence = FilePersistence(str(cache_path))
    return PersistedTokenCache(persistence)


def _authority(azure: AzureConfig, tenant_id: str) -> str:
    base = azure.authority_base.rstrip("/")
    return f"{base}/{tenant_id}"


def record_login_event(
    data_dir: Path,
    account_email: str,
    auth_mode: str,
    tenant_id: str,
    execution_id: Optional[str],
) -> Path:
    """
    Persist non-sensitive auth metadata for auditing.
    Tokens remain only in the MSAL cache.
    """
    login_dir = ensure_dir(data_dir / "login")
    stamp = utc_now().strftime("%Y%m%d-%H%M%S")
    safe = account_email.replace("@", "_at_").replace("/", "_")
    path = login_dir / f"{safe}_{stamp}_{execution_id or 'noexec'}.json"
    save_json(
        path,
        {
            "account": account_email,
            "auth_mode": auth_mode,
            "tenant_id": tenant_id,
            "execution_id": execution_id,
            "agent_type": "inbox_sweep",
            "timestamp": utc_now().isoformat(),
        },
    )
    return path


def build_public_client(
    azure: AzureConfig, cache_path: Path, tenant_id: str
) -> msal.PublicClientApplication:
    cache_path = cache_path.expanduser()
    ensure_dir(cache_path.parent)
    return msal.PublicClientApplication(
        client_id=azure.client_id,
        authority=_authority(azure, tenant_id),
        token_cache=_build_cache(cache_path),
    )


def build_confidential_client(
    azure: AzureConfig, cache_path: Path, tenant_id: str
) -> msal.ConfidentialClientApplication:
    cache_path = cache_path.expanduser()
    ensure_dir(cache_path.parent)
    load_env_file()
    client_secret = os.environ.get(azure.client_secret_env)
    if not client_secret:
        raise TriageError(
            ErrorKind.MISSING_CREDENTIAL,
            f"Missing client secret env var: {azure.client_secret_env}. "
            "Set it before running (do not put secrets in config.toml).",
        )
    return msal.ConfidentialClientApplication(
        client_id=azure.client_id,
        authority=_authority(azure, tenant_id),
        client_credential=client_secret,
        token_cache=_build_cache(cache_path),
    )


def acquire_delegated_token(
    app: msal.PublicClientApplication,
    scopes: Iterable[str],
    username: str,
    *,
    interactive: bool = True,
) -> dict | None:
    scopes_clean = []
    for s in scopes:
        if s.lower() in RESERVED_SCOPES:
            logger.warning("Ignoring reserved scope in config: %s", s)
            continue
        scopes_clean.append(s)

    accounts = app.get_accounts(username=username)
    result: dict | None = None
    if accounts:
        logger.debug("Attempting silent token acquisition for %s", username)
        result = app.acquire_token_silent(list(scopes_clean), account=accounts[0])

    if not result and interactive:
        logger.info(
            "No suitable cached token for %s, launching interactive login...", username
        )
        result = app.acquire_token_interactive(
            scopes=list(scopes_clean),
            login_hint=username,
            prompt="select_account",
        )

    if not result or "access_token" not in result:
        logger.error(
            "Failed to acquire delegated token for %s: %s",
            username,
            (result or {}).get("error_description"),
        )
        return None
    return result


def acquire_application_token(
    app: msal.ConfidentialClientApplication,
) -> dict | None:
    # Graph .default scope: the app permissions granted in the portal.
    result = app.acquire_token_for_client(
        scopes=["https://graph.microsoft.com/.default"]
    )
    if not result or "access_token" not in result:
        logger.error(
            "Failed to acquire application token: %s",
            (result or {}).get("error_description"),
        )
        return None
    return result


def connect_graph(
    config: AppConfig,
    account: AccountConfig,
    execution_id: Optional[str] = None,
    *,
    interactive: bool = True,
) -> GraphClient:
    """Authenticated GraphClient honouring auth mode and account overrides."""
    azure = config.azure_for_account(account)
    tenant_id = azure.tenant_id
    cache_path = Path(config.auth.token_cache_path)
    labels = config.labels

    if config.auth.auth_mode == "delegated":
        app = build_public_client(azure, cache_path, tenant_id=tenant_id)
        token = acquire_delegated_token(
            app, azure.delegated_scopes, account.email, interactive=interactive
        )
        user = "me"
    elif config.auth.auth_mode == "application":
        app = build_confidential_client(azure, cache_path, tenant_id=tenant_id)
        token = acquire_application_token(app)
        # app-only tokens cannot use /me
        user = account.email
    else:
        raise ValueError(f"Unknown auth_mode: {config.auth.auth_mode}")

    if not token:
        raise TriageError(
            ErrorKind.INVALID_CREDENTIAL,
            f"{config.auth.auth_mode} auth failed for {account.email}",
        )
    record_login_event(
        config.data_dir, account.email, config.auth.auth_mode, tenant_id, execution_id
    )
    return GraphClient(
        token["access_token"],
        user=user,
        processed_label=labels.processed,
        error_label=labels.error,
    )
