from deploygate.decision.types import DecisionStatus, DeploymentRequest, GovernanceDecision

__all__ = ["DecisionStatus", "DeploymentRequest", "GovernanceDecision"]
