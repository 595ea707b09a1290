"""
The client side of an execution session.

The submodules are:
 - interface -- protocols of the collaborators: worker handle, request channel, capability cache, event sink
 - state -- the lock-guarded session state
 - coordinator -- the session state machine itself, the entrypoint for running
 - sinks -- event sinks usable out of the box
"""
