"""
Outbound event sink package.
"""
