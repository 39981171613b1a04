"""Prompting package.

Deterministic prompt construction and response post-processing helpers used by
the chat pipeline. Neither module performs memory access or model invocation.
"""
