"""maestro modules - Self-contained bricks following the brick philosophy

Each module is a self-contained component with clear contracts:
- Subprocess Helper: Run local processes with timeouts and interruption
- Host Connector: Open a local or SSH command channel to one host
- Runtime Installer: Detect Docker and install it when missing
- Image Builder: Build the server image once per run (single-flight)
- Container Deployer: Replace, start and verify the named container
- Docker API: Docker Engine HTTP backend for the deployer
- Notifier: Versioned TCP side channel to the dashboard
- Dashboard Launcher: Run the dashboard process and forward its output
"""
