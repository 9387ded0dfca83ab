"""Event lifecycle: sagas, sweeps, and the change feed."""
