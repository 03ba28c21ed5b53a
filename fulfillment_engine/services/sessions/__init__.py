"""
Packing session maintenance package.
"""
