"""
result_reporter
===============

Finalises leased Commands from client-reported execution outcomes and
keeps per-connection accounting (total / successful / failed / latency).
"""
