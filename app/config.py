# app/config.py

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # App
    app_name: str = "Ledger Link API"
    app_env: str = "development"
    debug: bool = True
    frontend_url: str = "http://localhost:3000"
    log_level: str = "INFO"

    # Supabase
    supabase_url: str
    supabase_anon_key: str
    supabase_service_role_key: str

    # Anthropic (Claude)
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"

    # Feature flags
    enable_ai_explanations: bool = True
    enable_learning: bool = True

    # Matching config
    date_tolerance_days: int = 5
    min_confidence: float = 50.0
    candidate_page_size: int = 500
    candidate_max_pages: int = 20


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()


# ============================================
# Matching configuration
# ============================================

class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class ToleranceTier(_Frozen):
    """Amounts up to `max_amount` (inclusive) get `percentage` tolerance."""

    max_amount: float | None
    percentage: float


class ScoreWeights(_Frozen):
    """Weights of the eight deterministic factors. Sum to 1.0."""

    value_proximity: float = 0.25
    date_proximity: float = 0.20
    channel_match: float = 0.10
    customer_recurrence: float = 0.10
    historical_patterns: float = 0.10
    text_similarity: float = 0.15
    vendor_pattern: float = 0.05
    seasonal_pattern: float = 0.05


class FeatureWeights(_Frozen):
    """Weights of the six features used by the learning scorer."""

    value_distance: float = 0.30
    date_distance: float = 0.25
    text_similarity: float = 0.20
    channel_match: float = 0.10
    customer_pattern: float = 0.10
    seasonal_pattern: float = 0.05


PatternKind = Literal["code", "customer", "installment", "anticipation"]


class VendorPattern(_Frozen):
    """A textual convention some ERP/bank uses when describing a payment."""

    name: str
    regex: str
    importance: float
    kind: PatternKind


DEFAULT_VENDOR_PATTERNS = (
    VendorPattern(name="venda", regex=r"venda\s*(?:n[ºo°.]?\s*)?#?\s*(\d+)", importance=1.0, kind="code"),
    VendorPattern(name="pedido", regex=r"pedido\s*(?:n[ºo°.]?\s*)?#?\s*(\d+)", importance=0.9, kind="code"),
    VendorPattern(name="fatura", regex=r"fatura\s*(?:n[ºo°.]?\s*)?#?\s*(\d+)", importance=0.8, kind="code"),
    VendorPattern(name="cliente", regex=r"cliente\s*:?\s*([a-zà-ú][a-zà-ú ]+)", importance=0.7, kind="customer"),
    VendorPattern(name="parcela", regex=r"parcela\s*(?:n[ºo°.]?\s*)?(\d+)(?:\s*(?:/|de)\s*(\d+))?", importance=0.8, kind="installment"),
    VendorPattern(name="antecipacao", regex=r"antecipa[çc][ãa]o", importance=0.9, kind="anticipation"),
)

DEFAULT_CHANNEL_SOURCES = {
    "GESTAO_CLICK": ("GESTAO_CLICK", "API"),
    "Whatsapp": ("MOBILE", "PIX", "TRANSFER", "APP"),
    "Presencial": ("CARD", "CREDIT_CARD", "DEBIT_CARD", "POS", "CASH"),
    "Instagram": ("MOBILE", "PIX", "TRANSFER", "APP", "SOCIAL"),
    "Facebook": ("MOBILE", "PIX", "TRANSFER", "APP", "SOCIAL"),
    "Google": ("MOBILE", "PIX", "TRANSFER", "ONLINE", "WEB"),
    "Tráfego": ("MOBILE", "PIX", "TRANSFER", "ONLINE", "WEB", "AD"),
    "Site": ("ONLINE", "WEB", "PIX", "CREDIT_CARD"),
}

DEFAULT_ANTICIPATION_TERMS = (
    "antecipacao",
    "adiantamento",
    "recebivel",
    "recebiveis",
    "antec",
    "adiant",
    "adto",
    "ant",
    "liquidacao",
    "liq",
)

# Substrings pushed down to storage as ILIKE filters; the detector re-checks every hit.
DEFAULT_ANTICIPATION_QUERY_TERMS = ("antecip", "adiant", "recebiv", "liquida", "adto")

# Accent-stripped, since they are matched against normalized text.
PORTUGUESE_STOP_WORDS = frozenset({
    "que", "para", "com", "nao", "uma", "dos", "por", "mais", "como", "mas",
    "ele", "das", "seu", "sua", "quando", "muito", "nos", "tambem", "pelo",
    "pela", "ate", "isso", "ela", "entre", "depois", "sem", "mesmo", "aos",
    "ter", "seus", "quem", "nas", "esse", "eles", "voce", "essa", "num", "nem",
    "suas", "meu", "minha", "numa", "pelos", "elas", "qual", "lhe", "deles",
    "essas", "esses", "pelas", "este", "dele", "voces", "vos", "lhes", "meus",
    "minhas", "teu", "tua", "teus", "tuas", "nosso", "nossa", "nossos",
    "nossas", "dela", "delas", "esta", "estes", "estas", "aquele", "aquela",
    "aqueles", "aquelas", "isto", "aquilo", "estou", "estamos", "estao",
    "estava", "estavam", "esteja", "estejam", "estiver",
})


class LearningConfig(_Frozen):
    """Parameters of the heuristic learning scorer."""

    min_samples: int = 30
    acceptance_threshold: float = 0.75
    training_limit: int = 1000
    lookback_days: int = 180
    weights: FeatureWeights = Field(default_factory=FeatureWeights)
    steepness: float = 10.0
    midpoint: float = 0.5
    value_window: float = 0.5
    date_window_days: int = 90
    transaction_padding_days: int = 30
    single_transaction_window_days: int = 7
    date_horizon_days: int = 60
    seasonal_max_month_diff: int = 3


class MatchingConfig(_Frozen):
    """
    Every tunable of the reconciliation engine.

    Components take an instance at construction, so several
    configurations (e.g. per-tenant tuning) can live side by side.
    """

    tolerance_tiers: tuple[ToleranceTier, ...] = (
        ToleranceTier(max_amount=100, percentage=0.15),
        ToleranceTier(max_amount=1000, percentage=0.07),
        ToleranceTier(max_amount=None, percentage=0.03),
    )
    date_tolerance_days: int = 5
    anticipation_max_discount: float = 0.15
    anticipation_original_ratio: float = 0.96
    default_anticipation_discount: float = 5.0
    anticipation_bonus: float = 15.0
    min_confidence: float = 50.0
    weights: ScoreWeights = Field(default_factory=ScoreWeights)

    duplicate_amount_tolerance: float = 0.01
    duplicate_text_threshold: float = 70.0

    history_lookback_days: int = 180
    history_limit: int = 200
    customer_recurrence_limit: int = 5
    transaction_sale_lookback_days: int = 180
    suggestion_tolerance: float = 0.05
    suggestion_months: int = 3

    # Installment groups: parcels of one sale paid as separate transactions
    group_amount_tolerance: float = 0.02
    group_window_days: int = 7
    group_min_common_words: int = 2
    group_total_tolerance: float = 0.05

    channel_sources: dict[str, tuple[str, ...]] = Field(
        default_factory=lambda: dict(DEFAULT_CHANNEL_SOURCES)
    )
    vendor_patterns: tuple[VendorPattern, ...] = DEFAULT_VENDOR_PATTERNS
    anticipation_terms: tuple[str, ...] = DEFAULT_ANTICIPATION_TERMS
    anticipation_query_terms: tuple[str, ...] = DEFAULT_ANTICIPATION_QUERY_TERMS
    stop_words: frozenset[str] = PORTUGUESE_STOP_WORDS

    page_size: int = 500
    max_pages: int = 20

    learning: LearningConfig = Field(default_factory=LearningConfig)


@lru_cache()
def get_matching_config() -> MatchingConfig:
    """Matching configuration derived from the environment."""
    settings = get_settings()
    return MatchingConfig(
        date_tolerance_days=settings.date_tolerance_days,
        min_confidence=settings.min_confidence,
        page_size=settings.candidate_page_size,
        max_pages=settings.candidate_max_pages,
    )
