"""maestro - fleet deployment orchestrator for containerized game servers

Philosophy:
- Ruthless simplicity
- Brick architecture (self-contained modules)
- One host's failure never touches another host
- Fail fast on configuration, never on a single host

Horizon Maestro ensures Docker is present on every configured host, builds the
server image once, deploys the named container everywhere in parallel and
reports a deterministic fleet summary to the terminal and the dashboard.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
