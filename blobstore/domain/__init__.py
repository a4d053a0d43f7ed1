"""
Domain layer package housing repository contracts and domain-specific helpers.
"""
