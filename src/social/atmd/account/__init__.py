"""
Account Context

The core of the service: `AccountOrchestrator` coordinates the identity
provider, the GitHub token provider and the four stores, which are defined as
abstract interfaces in `ports` so the orchestrator never depends on a concrete
backend. Every public operation returns a `Result` carrying either a value or
an `AccountError`.
"""
