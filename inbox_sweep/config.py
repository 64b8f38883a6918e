from __future__ import annotations

from dataclasses import dataclass, field, replace
import os
from pathlib import Path
from typing import Dict, List, Optional

import toml  # type: ignore[import]

from .schemas import DEFAULT_CLASSIFICATION_PROMPT, DEFAULT_RESPONSE_PROMPT

PROCESSING_MODES = ("label", "draft", "send")


@dataclass
class AuthConfig:
    auth_mode: str = "application"  # application | delegated
    token_cache_path: str = "./data/msal_token_cache.bin"


@dataclass
class AzureConfig:
    client_id: str
    tenant_id: str
    authority_base: str = "https://login.microsoftonline.com"
    client_secret_env: str = "MS_GRAPH_CLIENT_SECRET"
    delegated_scopes: List[str] = field(
        default_factory=lambda: ["Mail.ReadWrite", "Mail.Send"]
    )


@dataclass
class ModelDefinition:
    """Single model configuration entry.

    `provider` is one of gemini | openai | openai-compatible. The API key is
    read from the environment variable named by `api_key_env`; it never lives
    in config.toml or in a checkpoint.
    """

    name: str
    provider: str = "gemini"
    model: str = ""
    api_key_env: str = "GEMINI_API_KEY"
    base_url: Optional[str] = None
    temperature: float = 0.2
    timeout_seconds: int = 60


@dataclass
class ClassifierConfig:
    model: str = "gemini-flash"  # key into [models]
    default_label: str = "General"
    reply_labels: List[str] = field(default_factory=lambda: ["support"])
    processing_mode: str = "label"  # label | draft | send
    classification_prompt: str = DEFAULT_CLASSIFICATION_PROMPT
    response_prompt: str = DEFAULT_RESPONSE_PROMPT
    query: str = "inbox"
    max_candidates: int = 0  # 0 = everything the source returns


@dataclass
class BatchConfig:
    max_batch_size: int = 20
    max_body_chars: int = 1000
    batch_delay_ms: int = 500


@dataclass
class ContinuationConfig:
    host_limit_seconds: int = 360
    safe_execution_seconds: int = 300
    warning_seconds: int = 240
    continuation_delay_seconds: int = 2
    max_continuations: int = 20
    state_retention_hours: int = 24
    lock_stale_seconds: int = 300


@dataclass
class RedactionConfig:
    enabled: bool = True
    mapping_ttl_seconds: int = 6 * 60 * 60


@dataclass
class LabelsConfig:
    processed: str = "ai✓"
    error: str = "aiX"
    processed_color: str = "preset4"
    error_color: str = "preset0"


@dataclass
class AzureOverrides:
    client_id: Optional[str] = None
    tenant_id: Optional[str] = None
    authority_base: Optional[str] = None
    client_secret_env: Optional[str] = None
    delegated_scopes: Optional[List[str]] = None


@dataclass
class ClassifierOverrides:
    model: Optional[str] = None
    default_label: Optional[str] = None
    reply_labels: Optional[List[str]] = None
    processing_mode: Optional[str] = None
    classification_prompt: Optional[str] = None
    response_prompt: Optional[str] = None


@dataclass
class AccountConfig:
    email: str
    label: str
    tenant_id: Optional[str] = None  # overrides azure.tenant_id if set
    azure_overrides: AzureOverrides = field(default_factory=AzureOverrides)
    classifier_overrides: ClassifierOverrides = field(default_factory=ClassifierOverrides)


@dataclass
class AppConfig:
    auth: AuthConfig
    azure: AzureConfig
    classifier: ClassifierConfig
    models: Dict[str, ModelDefinition]
    batch: BatchConfig
    continuation: ContinuationConfig
    redaction: RedactionConfig
    labels: LabelsConfig
    accounts: List[AccountConfig]
    repo_root: Path
    data_dir: Path

    def azure_for_account(self, account: AccountConfig) -> AzureConfig:
        base = replace(self.azure)
        ov = account.azure_overrides
        if ov.client_id:
            base.client_id = ov.client_id
        if ov.authority_base:
            base.authority_base = ov.authority_base
        if ov.client_secret_env:
            base.client_secret_env = ov.client_secret_env
        if ov.delegated_scopes:
            base.delegated_scopes = ov.delegated_scopes
        # tenant selection: override precedence account.azure_overrides > account.tenant_id > base default
        if ov.tenant_id:
            base.tenant_id = ov.tenant_id
        elif account.tenant_id:
            base.tenant_id = account.tenant_id
        return base

    def classifier_for_account(self, account: AccountConfig) -> ClassifierConfig:
        base = replace(self.classifier)
        ov = account.classifier_overrides
        for name in (
            "model",
            "default_label",
            "reply_labels",
            "processing_mode",
            "classification_prompt",
            "response_prompt",
        ):
            value = getattr(ov, name)
            if value is not None:
                setattr(base, name, value)
        return base

    def model_definition(self, key: str) -> ModelDefinition:
        if key not in self.models:
            raise KeyError(
                f"Model '{key}' is not defined under [models]. Known: {', '.join(sorted(self.models)) or 'none'}"
            )
        return self.models[key]


def _resolve_config_path(path: str | Path) -> Path:
    """
    Resolve a user-supplied config path:
    - allow pointing at a directory (uses config.toml inside)
    - fall back to config/<file> if only a filename is provided
    """
    supplied = Path(path).expanduser()
    cfg_path = supplied / "config.toml" if supplied.is_dir() else supplied

    if cfg_path.exists():
        return cfg_path.resolve()

    repo_config = Path(__file__).resolve().parent.parent / "config" / cfg_path.name
    if repo_config.exists():
        return repo_config.resolve()

    raise FileNotFoundError(f"Config file not found: {cfg_path}")


def _detect_repo_root(cfg_path: Path) -> Path:
    """
    Determine repo root whether config lives in repo/ or repo/config/.
    """
    if (cfg_path.parent / "inbox_sweep").exists():
        return cfg_path.parent
    if (cfg_path.parent.parent / "inbox_sweep").exists():
        return cfg_path.parent.parent
    return cfg_path.parent


def _validate_mode(mode: str) -> str:
    mode = (mode or "label").strip().lower()
    if mode not in PROCESSING_MODES:
        raise ValueError(
            f"Unknown processing_mode '{mode}'. Supported: {', '.join(PROCESSING_MODES)}"
        )
    return mode


def _env_int(name: str, fallback: object) -> int:
    return int(os.getenv(name, fallback) or 0)


def parse_config(raw: Dict, repo_root: Path) -> AppConfig:
    auth_raw = raw.get("auth", {})
    azure_raw = raw.get("azure", {})
    classifier_raw = raw.get("classifier", {})
    models_raw = raw.get("models", {})
    batch_raw = raw.get("batch", {})
    cont_raw = raw.get("continuation", {})
    redaction_raw = raw.get("redaction", {})
    labels_raw = raw.get("labels", {})
    accounts_raw = raw.get("accounts", [])

    auth = AuthConfig(
        auth_mode=str(auth_raw.get("auth_mode", "application")),
        token_cache_path=str(
            auth_raw.get("token_cache_path", "./data/msal_token_cache.bin")
        ),
    )

    azure = AzureConfig(
        client_id=str(azure_raw.get("client_id", "")),
        tenant_id=str(azure_raw.get("tenant_id", "organizations")),
        authority_base=str(
            azure_raw.get("authority_base", "https://login.microsoftonline.com")
        ),
        client_secret_env=str(
            azure_raw.get("client_secret_env", "MS_GRAPH_CLIENT_SECRET")
        ),
        delegated_scopes=[
            str(s)
            for s in azure_raw.get("delegated_scopes", ["Mail.ReadWrite", "Mail.Send"])
        ],
    )

    defaults = ClassifierConfig()
    classifier = ClassifierConfig(
        model=str(classifier_raw.get("model", defaults.model)),
        default_label=str(classifier_raw.get("default_label", defaults.default_label)),
        reply_labels=[str(s) for s in classifier_raw.get("reply_labels", defaults.reply_labels)],
        processing_mode=_validate_mode(
            str(classifier_raw.get("processing_mode", defaults.processing_mode))
        ),
        classification_prompt=str(
            classifier_raw.get("classification_prompt", defaults.classification_prompt)
        ),
        response_prompt=str(classifier_raw.get("response_prompt", defaults.response_prompt)),
        query=str(classifier_raw.get("query", defaults.query)),
        max_candidates=int(classifier_raw.get("max_candidates", 0) or 0),
    )

    models: Dict[str, ModelDefinition] = {}
    for name, m in models_raw.items():
        provider = str(m.get("provider", "gemini")).strip().lower()
        default_env = "GEMINI_API_KEY" if provider == "gemini" else "OPENAI_API_KEY"
        models[name] = ModelDefinition(
            name=name,
            provider=provider,
            model=str(m.get("model", "") or name),
            api_key_env=str(m.get("api_key_env", default_env)),
            base_url=m.get("base_url"),
            temperature=float(m.get("temperature", 0.2)),
            timeout_seconds=int(m.get("timeout_seconds", 60)),
        )

    # A config without [models] still works when classifier.model names a Gemini model.
    if classifier.model and classifier.model not in models:
        models[classifier.model] = ModelDefinition(
            name=classifier.model, provider="gemini", model=classifier.model
        )

    batch = BatchConfig(
        max_batch_size=_env_int(
            "SWEEP_MAX_BATCH_SIZE", batch_raw.get("max_batch_size", 20)
        ),
        max_body_chars=int(batch_raw.get("max_body_chars", 1000)),
        batch_delay_ms=_env_int("SWEEP_BATCH_DELAY_MS", batch_raw.get("batch_delay_ms", 500)),
    )
    if batch.max_batch_size < 1:
        raise ValueError("batch.max_batch_size must be at least 1")

    cdef = ContinuationConfig()
    continuation = ContinuationConfig(
        host_limit_seconds=int(cont_raw.get("host_limit_seconds", cdef.host_limit_seconds)),
        safe_execution_seconds=_env_int(
            "SWEEP_SAFE_EXECUTION_SECONDS",
            cont_raw.get("safe_execution_seconds", cdef.safe_execution_seconds),
        ),
        warning_seconds=int(cont_raw.get("warning_seconds", cdef.warning_seconds)),
        continuation_delay_seconds=int(
            cont_raw.get("continuation_delay_seconds", cdef.continuation_delay_seconds)
        ),
        max_continuations=int(cont_raw.get("max_continuations", cdef.max_continuations)),
        state_retention_hours=int(
            cont_raw.get("state_retention_hours", cdef.state_retention_hours)
        ),
        lock_stale_seconds=int(cont_raw.get("lock_stale_seconds", cdef.lock_stale_seconds)),
    )
    if continuation.safe_execution_seconds >= continuation.host_limit_seconds:
        raise ValueError(
            "continuation.safe_execution_seconds must be below host_limit_seconds"
        )

    redaction = RedactionConfig(
        enabled=bool(redaction_raw.get("enabled", True)),
        mapping_ttl_seconds=int(redaction_raw.get("mapping_ttl_seconds", 6 * 60 * 60)),
    )

    ldef = LabelsConfig()
    labels = LabelsConfig(
        processed=str(labels_raw.get("processed", ldef.processed)),
        error=str(labels_raw.get("error", ldef.error)),
        processed_color=str(labels_raw.get("processed_color", ldef.processed_color)),
        error_color=str(labels_raw.get("error_color", ldef.error_color)),
    )

    accounts: List[AccountConfig] = []
    for a in accounts_raw:
        email = str(a["email"])
        azure_ov_raw = a.get("azure_overrides", {})
        cls_ov_raw = a.get("classifier_overrides", {})

        azure_ov = AzureOverrides(
            client_id=azure_ov_raw.get("client_id"),
            tenant_id=azure_ov_raw.get("tenant_id"),
            authority_base=azure_ov_raw.get("authority_base"),
            client_secret_env=azure_ov_raw.get("client_secret_env"),
            delegated_scopes=(
                [str(s) for s in azure_ov_raw.get("delegated_scopes")]
                if azure_ov_raw.get("delegated_scopes")
                else None
            ),
        )
        cls_ov = ClassifierOverrides(
            model=cls_ov_raw.get("model"),
            default_label=cls_ov_raw.get("default_label"),
            reply_labels=(
                [str(s) for s in cls_ov_raw.get("reply_labels")]
                if cls_ov_raw.get("reply_labels") is not None
                else None
            ),
            processing_mode=(
                _validate_mode(cls_ov_raw["processing_mode"])
                if cls_ov_raw.get("processing_mode")
                else None
            ),
            classification_prompt=cls_ov_raw.get("classification_prompt"),
            response_prompt=cls_ov_raw.get("response_prompt"),
        )
        tenant_id = a.get("tenant_id")
        accounts.append(
            AccountConfig(
                email=email,
                label=str(a.get("label", email)),
                tenant_id=str(tenant_id) if tenant_id else None,
                azure_overrides=azure_ov,
                classifier_overrides=cls_ov,
            )
        )

    data_dir = Path(str(raw.get("data_dir", "data"))).expanduser()
    if not data_dir.is_absolute():
        data_dir = repo_root / data_dir

    return AppConfig(
        auth=auth,
        azure=azure,
        classifier=classifier,
        models=models,
        batch=batch,
        continuation=continuation,
        redaction=redaction,
        labels=labels,
        accounts=accounts,
        repo_root=repo_root,
        data_dir=data_dir,
    )


def load_config(path: str | Path) -> AppConfig:
    cfg_path = _resolve_config_path(path)
    repo_root = _detect_repo_root(cfg_path)
    return parse_config(toml.load(str(cfg_path)), repo_root)
