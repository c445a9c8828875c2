class PipelineError(RuntimeError):
    pass


class HolidayLookaheadExceeded(PipelineError):
    def __init__(self, start, max_days: int):
        super().__init__(f"No working day found within {max_days} days after {start}")
        self.start = start
        self.max_days = max_days


class FineError(RuntimeError):
    pass


class DuplicateFine(FineError):
    pass


class FineNotFound(FineError):
    pass


class StudentNotFound(FineError):
    pass


class UnsupportedDialect(PipelineError):
    pass
