"""
Built-in test suites.

Every module in this package is imported by
:func:`vmtest.discovery.load_builtin_suites`, both on the host and by the
native helper inside the guest.
"""
