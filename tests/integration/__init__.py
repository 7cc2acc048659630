# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Integration tests for the code graph engine.

This package contains end-to-end tests that run the engine over small
on-disk repositories and check the published graph, diagnostics and cache.
"""
