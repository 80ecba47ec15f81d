"""
Movie catalog service with a read-through query cache.
"""
