"""
canarypilot Web Interface
=========================

FastAPI backend exposing a release session over HTTP and a websocket event
stream.
"""
