"""
Core package for shared utilities.

This module makes the core directory a Python package, enabling proper
import resolution for configuration, logging, the error taxonomy and the
actor identity shared across the engine.
"""
