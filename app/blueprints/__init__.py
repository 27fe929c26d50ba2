"""
Milestone Progress Engine
Blueprint registry.

    health_bp      /api/v1/health   readiness / liveness probes
    milestone_bp   /api/v1          milestones, tasks, dependencies, approvals
"""
