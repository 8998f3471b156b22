"""
Feature modules. Each owns its models, service functions and blueprint and
builds on the shared pieces in ``app.ssms`` (identity, gate, audit sink, storage).
"""
