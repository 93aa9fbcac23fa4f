"""funnel_server: FastAPI service exposing the assessment funnel engine."""
