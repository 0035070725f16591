"""
The protocol package frames commands sent over a pooled connection and decides when the
peer's reply is complete.
"""
