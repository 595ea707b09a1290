"""
Low level representation of an execution session -- data models, functional helpers and tracing.

Used to stabilise the contract between the coordinator and its collaborators (worker handles,
request channels, extension caches, event sinks).
"""
