"""REST surface for the deploy task queue."""

from branch_deployer.web.main import create_app

__all__ = ["create_app"]
