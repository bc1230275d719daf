class LifelineError(Exception):
    pass


class RejectedSignature(LifelineError):
    pass


class DuplicateDelivery(LifelineError):
    pass


class UnclassifiedWorkflow(LifelineError):
    pass


class IncompleteFacts(LifelineError):
    pass


class UpstreamUnavailable(LifelineError):
    pass


class RateLimited(UpstreamUnavailable):
    retry_after: float

    def __init__(self, *args, **kwargs):
        self.retry_after = kwargs.pop("retry_after", 60.0)
        super().__init__(*args, **kwargs)


class VersionConflict(LifelineError):
    pass


class RequestNotFound(LifelineError):
    pass
