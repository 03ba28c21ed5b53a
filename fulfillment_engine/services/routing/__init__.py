"""
Route sequencing service package.
"""
