"""
Order fulfillment engine for perishable-goods wholesale distribution.
"""
