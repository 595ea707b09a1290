"""
Request channel over zmq -- messages, their serde, socket helpers and the channel implementation
"""
