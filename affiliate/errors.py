class AffiliateServiceError(Exception):
    pass


class SelfReferralError(AffiliateServiceError):
    pass


class InvalidReferralCodeError(AffiliateServiceError):
    pass


class ProgramNotConfiguredError(AffiliateServiceError):
    pass


class ProgramLockedError(AffiliateServiceError):
    pass


class DuplicateEventError(AffiliateServiceError):
    pass


class RewardNotFoundError(AffiliateServiceError):
    pass


class RewardStateConflictError(AffiliateServiceError):
    pass


class UniqueConstraintError(AffiliateServiceError):
    pass
