"""
CarePath - Scheduling Engine Exceptions
"""


class SchedulingError(Exception):
    """Base class for scheduling-engine failures"""


class EpisodeNotFoundError(SchedulingError):
    """Raised by mutating operations that target an unknown episode"""

    def __init__(self, episode_id: str):
        super().__init__(f"Episode {episode_id} not found")
        self.episode_id = episode_id


class PathwayResolutionError(SchedulingError):
    """A referenced care pathway has a malformed step list; no safe default exists"""

    def __init__(self, pathway_id: str, detail: str):
        super().__init__(f"Care pathway {pathway_id} cannot be resolved: {detail}")
        self.pathway_id = pathway_id


class InvalidStepTransitionError(SchedulingError):
    """Episode step status change that the step lifecycle does not allow"""


class RuleSetNotFoundError(SchedulingError):
    """Requested stage rule set version does not exist"""


class StageVersionConflictError(SchedulingError):
    """Stage change raced with another writer (optimistic stage_version check failed)"""

    def __init__(self, episode_id: str, expected: int, actual: int):
        super().__init__(f"Episode {episode_id} stage_version is {actual}, expected {expected}")
        self.episode_id = episode_id
        self.expected = expected
        self.actual = actual
