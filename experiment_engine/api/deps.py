from fastapi import Request

from experiment_engine.services.experiments.service import ExperimentService


def get_experiment_service(request: Request) -> ExperimentService:
    """The process-wide service built in the application lifespan."""
    return request.app.state.experiment_service
