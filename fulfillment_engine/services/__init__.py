"""
Domain services package.

This module makes the services directory a Python package. Each subpackage
owns one part of the fulfillment workflow.
"""
