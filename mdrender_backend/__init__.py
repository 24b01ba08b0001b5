"""Isolated markdown -> sanitized HTML rendering core.

This package keeps FastAPI route handlers thin:
- sanitization allow-lists (policy)
- the five-stage transformation pipeline
- an isolated execution unit (thread or child process) hosting the pipeline
- a host coordinator correlating requests, responses and timeouts
- HTML/PDF export of rendered output

Security note:
Rendered HTML is only as safe as the allow-list in policy.py. Everything not
listed there is stripped structurally, never escaped into visible markup.
"""
