from deploygate.approvals.types import ApprovalRequest, ApprovalStatus, NotificationEvent, Vote, VoteDecision

__all__ = [
    "ApprovalRequest",
    "ApprovalStatus",
    "NotificationEvent",
    "Vote",
    "VoteDecision",
]
