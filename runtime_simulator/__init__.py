"""
Runtime Simulator package

Headless player for faceplates: an in-memory data store implementing the
store interface of the binding runtime, and a command line entry point
that loads a JSON project and prints the live binding values.
"""
