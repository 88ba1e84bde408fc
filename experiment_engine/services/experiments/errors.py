class ExperimentError(Exception):
    """Base class for failures the engine reports to its caller."""


class ValidationError(ExperimentError):
    """Experiment configuration is malformed or inconsistent."""

    def __init__(self, rule: str, message: str):
        super().__init__(message)
        self.rule = rule
        self.message = message


class NotFoundError(ExperimentError):
    def __init__(self, experiment_id: str):
        super().__init__(f"Experiment {experiment_id} not found")
        self.experiment_id = experiment_id


class InvalidStateError(ExperimentError):
    """Operation is not allowed in the experiment's current lifecycle state."""


class NotRunningError(InvalidStateError):
    def __init__(self, experiment_id: str, status: str):
        super().__init__(f"Experiment {experiment_id} is not running (status: {status})")
        self.experiment_id = experiment_id
        self.status = status


class ExcludedError(ExperimentError):
    """Participant does not qualify for the experiment. A valid outcome, not a fault."""

    def __init__(self, participant_id: str, experiment_id: str, reason: str):
        super().__init__(
            f"Participant {participant_id} excluded from experiment {experiment_id}: {reason}"
        )
        self.participant_id = participant_id
        self.experiment_id = experiment_id
        self.reason = reason


class NotAssignedError(ExperimentError):
    def __init__(self, participant_id: str, experiment_id: str):
        super().__init__(f"Participant {participant_id} not assigned to experiment {experiment_id}")
        self.participant_id = participant_id
        self.experiment_id = experiment_id


class UnknownVariantError(ExperimentError):
    def __init__(self, variant_id: str, experiment_id: str):
        super().__init__(f"Variant {variant_id} not found in experiment {experiment_id}")
        self.variant_id = variant_id
        self.experiment_id = experiment_id
