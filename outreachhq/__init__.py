"""
OutreachHQ API package.
"""
