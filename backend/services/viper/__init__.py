"""
VIPER Package — liquidation-cluster strategy engine and autonomous controller.

Re-exports the public API so callers can import from
``backend.services.viper`` directly.
"""

__all__ = [
    "ViperConfig", "resolve_viper_defaults", "load_viper_config", "save_viper_config",
    "MarketSample", "DetectedCluster", "VolatilityMetrics", "ProfitSignal",
    "SizedPosition", "AutoTradingState",
    "ViperIndicators",
    "MarketSampleSource", "RandomMarketSampleSource", "OpportunityScanner",
    "size_position", "exit_levels", "optimal_leverage",
    "ActiveTradeRegistry",
    "ViperEngine",
    "AutonomousController",
]

from backend.services.viper.config import (
    ViperConfig,
    resolve_viper_defaults,
    load_viper_config,
    save_viper_config,
)
from backend.services.viper.models import (
    MarketSample,
    DetectedCluster,
    VolatilityMetrics,
    ProfitSignal,
    SizedPosition,
    AutoTradingState,
)
from backend.services.viper.indicators import ViperIndicators
from backend.services.viper.scanner import (
    MarketSampleSource,
    RandomMarketSampleSource,
    OpportunityScanner,
)
from backend.services.viper.sizing import size_position, exit_levels, optimal_leverage
from backend.services.viper.active_trades import ActiveTradeRegistry
from backend.services.viper.engine import ViperEngine
from backend.services.viper.controller import AutonomousController
