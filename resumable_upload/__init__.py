"""
Resumable Upload - chunked file transfer that survives interruptions.

A client splits a file into fixed-size chunks and sends them, in parallel,
to a server that records each receipt and reassembles the file once every
chunk has arrived. Interrupted uploads resume from the server's record of
what it already has.
"""

__version__ = "1.0.0"
