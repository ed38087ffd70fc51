"""
Domain Services

Services are imported by full module path (app.domain.services.<name>);
the package itself re-exports nothing so that the state machine, the models
and the services can import each other without cycles.
"""
