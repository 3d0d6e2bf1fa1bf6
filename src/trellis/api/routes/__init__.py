"""
API routers, one per area of the product.
"""
