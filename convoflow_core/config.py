"""Configuration for the flow execution service."""

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .analysis.analyzer import AnalyzerThresholds
from .analytics.metrics import MetricsConfig
from .flow.interpreter import InterpreterConfig
from .resilience.fallback import FallbackConfig
from .resilience.retry import RetryConfig
from .routing.router import RouterConfig, RoutingStrategy


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="CONVOFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service settings
    service_name: str = "convoflow"
    host: str = "0.0.0.0"
    port: int = 8090
    debug: bool = False
    log_level: str = "info"
    log_json: bool = True

    # Enhanced path feature flags
    enhanced_enabled: bool = True
    enhanced_disabled_tenants: List[str] = []
    enhanced_disabled_templates: List[str] = []
    forced_enhanced_tenants: List[str] = []
    forced_enhanced_templates: List[str] = []
    forced_baseline_tenants: List[str] = []
    forced_baseline_templates: List[str] = []
    enhanced_rollout_percentage: float = 100.0

    # Router
    router_confidence_threshold: float = 0.6
    router_strategy: RoutingStrategy = RoutingStrategy.BALANCED
    router_cache_ttl_seconds: float = 60.0
    router_cache_max_entries: int = 10000
    router_min_live_samples: int = 20
    router_max_enhanced_fallback_rate: float = 0.5

    # Analyzer risk thresholds
    analyzer_medium_risk: float = 0.25
    analyzer_high_risk: float = 0.5
    analyzer_critical_risk: float = 0.75
    analyzer_sequential_inputs: int = 3
    analyzer_min_capture_success_rate: float = 0.8

    # Metrics
    metrics_window_seconds: float = 3600.0
    metrics_max_events_per_tenant: int = 10000
    metrics_min_samples: int = 20

    # Engines
    interpreter_max_chain_steps: int = 100
    enhanced_module_timeout_seconds: float = 2.0
    enhanced_step_timeout_seconds: float = 5.0

    # State store
    state_backend: str = "memory"  # memory or redis
    redis_url: str = "redis://localhost:6379/0"
    state_ttl_seconds: int = 86400
    store_retry_attempts: int = 3
    store_retry_base_delay: float = 0.05
    cas_max_retries: int = 3
    session_lock_timeout_seconds: float = 10.0

    # Collaborators
    lead_service_url: Optional[str] = None
    lead_service_api_key: Optional[str] = None
    capture_service_url: Optional[str] = None

    def router_config(self) -> RouterConfig:
        return RouterConfig(
            enhanced_enabled=self.enhanced_enabled,
            disabled_tenants=set(self.enhanced_disabled_tenants),
            disabled_templates=set(self.enhanced_disabled_templates),
            forced_enhanced_tenants=set(self.forced_enhanced_tenants),
            forced_enhanced_templates=set(self.forced_enhanced_templates),
            forced_baseline_tenants=set(self.forced_baseline_tenants),
            forced_baseline_templates=set(self.forced_baseline_templates),
            rollout_percentage=self.enhanced_rollout_percentage,
            confidence_threshold=self.router_confidence_threshold,
            strategy=self.router_strategy,
            min_live_samples=self.router_min_live_samples,
            max_enhanced_fallback_rate=self.router_max_enhanced_fallback_rate,
            cache_ttl_seconds=self.router_cache_ttl_seconds,
            cache_max_entries=self.router_cache_max_entries,
            fallback_timeout_seconds=self.enhanced_step_timeout_seconds,
        )

    def analyzer_thresholds(self) -> AnalyzerThresholds:
        return AnalyzerThresholds(
            medium_risk=self.analyzer_medium_risk,
            high_risk=self.analyzer_high_risk,
            critical_risk=self.analyzer_critical_risk,
            sequential_inputs=self.analyzer_sequential_inputs,
            min_capture_success_rate=self.analyzer_min_capture_success_rate,
        )

    def metrics_config(self) -> MetricsConfig:
        return MetricsConfig(
            window_seconds=self.metrics_window_seconds,
            max_events_per_tenant=self.metrics_max_events_per_tenant,
            min_samples=self.metrics_min_samples,
        )

    def interpreter_config(self) -> InterpreterConfig:
        return InterpreterConfig(max_chain_steps=self.interpreter_max_chain_steps)

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.store_retry_attempts,
            base_delay=self.store_retry_base_delay,
        )

    def fallback_config(self) -> FallbackConfig:
        return FallbackConfig(enhanced_timeout_seconds=self.enhanced_step_timeout_seconds)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings."""
    return Settings()
