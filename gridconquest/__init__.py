"""
gridconquest - territory grid conquest engine.

Awards users exclusive ownership of fixed-size lat/lon grid cells from the GPS
routes of their activities, and turns the outcome into XP and achievement tags.

No database required. No global config.
Store, configuration and user context are injected by the caller.
"""

__version__ = "0.1.0"

# Main pipeline component
from .orchestrator import (
    ConquestOrchestrator,
    InvalidActivityError,
    TerritoryCommitError,
    UserContextUnavailableError,
)

# Core computation
from .geo_grid import (
    CELL_SIZE_DEGREES,
    cell_boundary,
    cell_center,
    cell_id,
    cell_index,
    haversine_distance_meters,
    parse_cell_id,
)
from .rasterizer import rasterize, trace_route
from .ownership import TerritoryTally, classify, resolve
from .scoring import compute_xp, level
from .missions import classify_missions

# Injected collaborators
from .store import (
    CellStore,
    CellSnapshot,
    InMemoryCellStore,
    JsonCellStore,
    PostgresCellStore,
    StoreError,
    StoreNotInitializedError,
    CellConflictError,
)
from .providers import (
    ConfigProvider,
    StaticConfigProvider,
    JsonConfigProvider,
    ContextProvider,
    InMemoryContextProvider,
)

# Core schemas
from .schemas import (
    Activity,
    ActivityTerritoryChunk,
    ActivityType,
    CellHistoryEntry,
    CellResolution,
    ConquestResult,
    Coordinate,
    GameplayConfig,
    GamificationState,
    GridCoordinate,
    Interaction,
    Mission,
    MissionCategory,
    MissionRarity,
    RoutePoint,
    TerritoryCell,
    TerritoryStats,
    UserContext,
    UserProgress,
    XPBreakdown,
    XPConfig,
)

__all__ = [
    # Main class
    "ConquestOrchestrator",
    "InvalidActivityError",
    "TerritoryCommitError",
    "UserContextUnavailableError",
    # Grid and route
    "CELL_SIZE_DEGREES",
    "cell_boundary",
    "cell_center",
    "cell_id",
    "cell_index",
    "haversine_distance_meters",
    "parse_cell_id",
    "rasterize",
    "trace_route",
    # Arbitration
    "TerritoryTally",
    "classify",
    "resolve",
    # Scoring
    "compute_xp",
    "level",
    "classify_missions",
    # Stores
    "CellStore",
    "CellSnapshot",
    "InMemoryCellStore",
    "JsonCellStore",
    "PostgresCellStore",
    "StoreError",
    "StoreNotInitializedError",
    "CellConflictError",
    # Providers
    "ConfigProvider",
    "StaticConfigProvider",
    "JsonConfigProvider",
    "ContextProvider",
    "InMemoryContextProvider",
    # Schemas
    "Activity",
    "ActivityTerritoryChunk",
    "ActivityType",
    "CellHistoryEntry",
    "CellResolution",
    "ConquestResult",
    "Coordinate",
    "GameplayConfig",
    "GamificationState",
    "GridCoordinate",
    "Interaction",
    "Mission",
    "MissionCategory",
    "MissionRarity",
    "RoutePoint",
    "TerritoryCell",
    "TerritoryStats",
    "UserContext",
    "UserProgress",
    "XPBreakdown",
    "XPConfig",
]
