"""
runproxy drives a remote execution session against a worker process: launch, handshake, extension
negotiation, run dispatch, cancellation and teardown. See `runproxy.proxy.coordinator`
"""

from runproxy.version import __version__
