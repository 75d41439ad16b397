"""Blue/Green Deployer (BGD).

Single-node orchestrator for zero-downtime blue/green deployments:
 - two environments per service (blue and green) behind production and test listeners
 - multi-container tasks started in dependency order (init, app, log router, collector)
 - bake window with debounced health checks and a consecutive-failure circuit breaker
 - atomic production swap on success, candidate teardown on failure
"""
