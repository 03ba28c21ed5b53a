"""
Order lifecycle service package.

This module makes the orders service directory a Python package, grouping
the state machine, repository, pricing, validation and the fulfillment
service facade.
"""
