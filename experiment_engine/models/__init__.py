from experiment_engine.models.experiment import (  # noqa: F401
    AssignmentContext,
    ConversionEvent,
    EventType,
    Experiment,
    ExperimentResults,
    ExperimentStatus,
    ExperimentType,
    ParticipantAssignment,
    Variant,
    VariantMetrics,
)
from experiment_engine.models.schemas import (  # noqa: F401
    AssignParticipantRequest,
    CreateExperimentRequest,
    RecordConversionRequest,
    UpdateExperimentRequest,
)
