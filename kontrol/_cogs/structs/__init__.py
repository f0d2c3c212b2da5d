"""
Data structures of the domain: object keys, bodies, deltas, finalizers, owners.

All the functions are purely data-manipulative and computational.
No external calls or any i/o activities are done here.
"""
