"""
HTTP surface of the case API.
"""
