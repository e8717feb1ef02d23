"""
Shared service utilities.

- http.py - requests session with retry, default timeout and User-Agent
"""
