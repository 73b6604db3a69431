"""Custodial wallet service core: jobs and worker pool, chain events, accounts and WSGI handlers."""

__version__ = "0.1.0"