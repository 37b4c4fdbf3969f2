# Caregiver Sync Services Package
# Note: Import specific items as needed to avoid circular imports

__all__ = [
    # Provider
    "RemoteDataProvider",
    "ProviderError",
    "CommandError",
    "NightscoutService",
    # Synchronization
    "RemoteDataSynchronizer",
    "SyncError",
    # Derived state
    "reconcile",
    "expand",
    "target_ranges",
    # Timeline
    "TimelineForecastGenerator",
    "TimelineService",
    # Loopers
    "LooperRegistry",
    "get_looper_registry",
]

_LOCATIONS = {
    "RemoteDataProvider": "services.remote_data_provider",
    "ProviderError": "services.remote_data_provider",
    "CommandError": "services.remote_data_provider",
    "NightscoutService": "services.nightscout_service",
    "RemoteDataSynchronizer": "services.sync_service",
    "SyncError": "services.sync_service",
    "reconcile": "services.override_service",
    "expand": "services.schedule_service",
    "target_ranges": "services.schedule_service",
    "TimelineForecastGenerator": "services.timeline_service",
    "TimelineService": "services.timeline_service",
    "LooperRegistry": "services.looper_service",
    "get_looper_registry": "services.looper_service",
}


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    if name in _LOCATIONS:
        import importlib
        module = importlib.import_module(_LOCATIONS[name])
        return getattr(module, name)
    raise AttributeError(f"module 'services' has no attribute '{name}'")
