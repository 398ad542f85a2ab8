"""
Runtime Service package for the scriptable endpoint runtime.

The runtime answers HTTP requests with user-authored code, enforcing:
- Route resolution: exact paths first, then `:param` patterns
- Authentication: API keys bound to one presentation method
- Rate limiting and quotas: fixed windows per route and identifier
- Isolation: one short-lived interpreter process per request

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.adapters: Registry and request log collaborators.
- app.auth: Credential extraction, dispatch and admin login.
- app.domain: Models and the request pipeline.
- app.execution: Language adapters, harnesses and the engine.
- app.quota / app.ratelimit: Admission counters.
- app.routing: Route resolver and cache.
"""
