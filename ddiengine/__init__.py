"""ddiengine: R-backed codebook loading with native and embedded backends.

Entry points for the application shell are ``BackendOrchestrator.load_codebook``
and ``BackendOrchestrator.get_catalog``; ``server.create_app`` exposes the same
contract over HTTP.
"""

__version__ = "0.1.0"
