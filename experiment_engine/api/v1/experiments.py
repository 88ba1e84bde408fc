from typing import Optional

from fastapi import APIRouter, Depends, Query

from experiment_engine.api.deps import get_experiment_service
from experiment_engine.models.experiment import (
    AssignmentContext,
    ExperimentStatus,
    ExperimentType,
)
from experiment_engine.models.schemas import (
    AssignmentResponse,
    AssignParticipantRequest,
    CreateExperimentRequest,
    ExperimentListResponse,
    ExperimentStatsResponse,
    RecordConversionRequest,
    SampleSizeResponse,
    StopExperimentRequest,
    UpdateExperimentRequest,
)
from experiment_engine.services.experiments.errors import ExcludedError
from experiment_engine.services.experiments.service import ExperimentService

router = APIRouter()


@router.post("", status_code=201)
async def create_experiment(
    request: CreateExperimentRequest,
    service: ExperimentService = Depends(get_experiment_service),
):
    experiment = await service.create_experiment(request)
    return experiment.to_dict()


@router.get("", response_model=ExperimentListResponse)
async def list_experiments(
    status: Optional[ExperimentStatus] = Query(None, description="Filter by status"),
    industry: Optional[str] = Query(None, description="Filter by industry"),
    type: Optional[ExperimentType] = Query(None, description="Filter by experiment type"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    service: ExperimentService = Depends(get_experiment_service),
):
    experiments = await service.list_experiments(status=status, industry=industry, type=type)
    page = experiments[offset : offset + limit]

    return ExperimentListResponse(experiments=[e.to_dict() for e in page], total=len(experiments))


@router.get("/stats", response_model=ExperimentStatsResponse)
async def get_experiment_stats(service: ExperimentService = Depends(get_experiment_service)):
    return await service.get_experiment_stats()


@router.get("/{experiment_id}")
async def get_experiment(
    experiment_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    experiment = await service.get_experiment(experiment_id)
    return experiment.to_dict()


@router.patch("/{experiment_id}")
async def update_experiment(
    experiment_id: str,
    request: UpdateExperimentRequest,
    service: ExperimentService = Depends(get_experiment_service),
):
    experiment = await service.update_experiment(experiment_id, request)
    return experiment.to_dict()


@router.post("/{experiment_id}/ready")
async def mark_ready(
    experiment_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    experiment = await service.mark_ready(experiment_id)
    return experiment.to_dict()


@router.post("/{experiment_id}/start")
async def start_experiment(
    experiment_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    experiment = await service.start_experiment(experiment_id)
    return experiment.to_dict()


@router.post("/{experiment_id}/pause")
async def pause_experiment(
    experiment_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    experiment = await service.pause_experiment(experiment_id)
    return experiment.to_dict()


@router.post("/{experiment_id}/resume")
async def resume_experiment(
    experiment_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    experiment = await service.resume_experiment(experiment_id)
    return experiment.to_dict()


@router.post("/{experiment_id}/stop")
async def stop_experiment(
    experiment_id: str,
    request: StopExperimentRequest,
    service: ExperimentService = Depends(get_experiment_service),
):
    experiment = await service.stop_experiment(experiment_id, request.reason)
    return experiment.to_dict()


@router.post("/{experiment_id}/complete")
async def complete_experiment(
    experiment_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    experiment = await service.complete_experiment(experiment_id)
    return experiment.to_dict()


@router.post("/{experiment_id}/archive")
async def archive_experiment(
    experiment_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    experiment = await service.archive_experiment(experiment_id)
    return experiment.to_dict()


@router.post("/{experiment_id}/monitor")
async def monitor_experiment(
    experiment_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    """Run a monitoring check now instead of waiting for the next tick."""
    reason = await service.monitor_experiment(experiment_id)
    return {"experiment_id": experiment_id, "stopped": reason is not None, "reason": reason}


@router.post("/{experiment_id}/assignments", response_model=AssignmentResponse)
async def assign_participant(
    experiment_id: str,
    request: AssignParticipantRequest,
    service: ExperimentService = Depends(get_experiment_service),
):
    context = AssignmentContext(**request.context.model_dump())
    try:
        assignment = await service.assign_participant(
            request.participant_id, experiment_id, context, request.session_id
        )
    except ExcludedError as e:
        # Not qualifying is an answer, not a failure
        return AssignmentResponse(
            experiment_id=experiment_id,
            participant_id=request.participant_id,
            included=False,
            reason=e.reason,
        )

    return AssignmentResponse(
        experiment_id=experiment_id,
        participant_id=assignment.participant_id,
        included=True,
        variant_id=assignment.variant_id,
        session_id=assignment.session_id,
    )


@router.get("/{experiment_id}/assignments")
async def get_assignments(
    experiment_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    assignments = await service.get_assignments(experiment_id)
    return {"assignments": [a.to_dict() for a in assignments], "total": len(assignments)}


@router.post("/{experiment_id}/conversions", status_code=201)
async def record_conversion(
    experiment_id: str,
    request: RecordConversionRequest,
    service: ExperimentService = Depends(get_experiment_service),
):
    event = await service.record_conversion(
        experiment_id,
        request.participant_id,
        request.event_type,
        request.value,
        request.metadata,
    )
    return event.to_dict()


@router.get("/{experiment_id}/conversions")
async def get_conversion_events(
    experiment_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    events = await service.get_conversion_events(experiment_id)
    return {"conversions": [e.to_dict() for e in events], "total": len(events)}


@router.get("/{experiment_id}/sample-size", response_model=SampleSizeResponse)
async def get_required_sample_size(
    experiment_id: str,
    baseline_rate: Optional[float] = Query(None, gt=0, lt=1, description="Baseline conversion"),
    service: ExperimentService = Depends(get_experiment_service),
):
    rate = service.settings.DEFAULT_BASELINE_RATE if baseline_rate is None else baseline_rate
    size = await service.get_required_sample_size(experiment_id, rate)
    return SampleSizeResponse(
        experiment_id=experiment_id, required_sample_size=size, baseline_rate=rate
    )
