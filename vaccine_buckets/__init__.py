"""Vaccination bucket rebuild engine.

Recomputes the Due and Late vaccination buckets and the compliance status of
children from a vaccination calendar. See ``rebuild.py`` for the rules.
"""
