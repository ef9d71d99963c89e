"""
CommerceHub - Unified commerce warehouse for storefront, point-of-sale and booking channels
"""
__version__ = "1.0.0"
