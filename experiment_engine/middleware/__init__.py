from experiment_engine.middleware.telemetry import TelemetryMiddleware

__all__ = ["TelemetryMiddleware"]
