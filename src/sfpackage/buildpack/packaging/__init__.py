"""
The `packaging` sub-package drives the external `sfdx` CLI through the
stages of a pipeline run.

This includes:
- Spawning the CLI behind a single command-runner seam.
- Authenticating the hub, managing scratch orgs, pushing source and running tests.
- Resolving packages and building new package versions.
"""
