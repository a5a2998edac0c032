"""Errors raised by the compliance engine.

All of them are input or data-quality problems the caller has to decide on
(reject the write, log it, or send it to a human). None are retried.
"""


class ComplianceError(ValueError):
    """Base class for compliance computation errors."""


class InvalidReturnCount(ComplianceError):
    """Returned count is negative or exceeds the dispensed count."""

    def __init__(self, dispensed_count: int, returned_count: int, container_id: str | None = None):
        self.dispensed_count = dispensed_count
        self.returned_count = returned_count
        self.container_id = container_id
        label = f" for container {container_id}" if container_id else ""
        super().__init__(
            f"Invalid return count{label}: returned {returned_count}, dispensed {dispensed_count}"
        )


class MultipleOpenCycles(ComplianceError):
    """More than one container is still unreturned for a subject."""

    def __init__(self, subject_id: str, cycles: list):
        self.subject_id = subject_id
        self.cycles = list(cycles)
        containers = ", ".join(c.container_id for c in self.cycles)
        super().__init__(
            f"Subject {subject_id} has {len(self.cycles)} open accountability cycles: {containers}"
        )


class DuplicateContainer(ComplianceError):
    """A container id was dispensed twice to the same subject."""

    def __init__(self, subject_id: str, container_id: str):
        self.subject_id = subject_id
        self.container_id = container_id
        super().__init__(
            f"Container {container_id} already dispensed to subject {subject_id}"
        )


class UnknownDosingFrequency(ComplianceError):
    """Dosing frequency code is not recognized."""

    def __init__(self, code):
        self.code = code
        super().__init__(f"Unknown dosing frequency: {code!r}")


class UnsupportedDosing(ComplianceError):
    """Dosing cannot be resolved, e.g. 'custom' without a dose-per-day override."""
