"""Workato recipe documentation sync.

Pulls recipe definitions for every managed customer account, detects which
recipes changed since the last committed snapshot and regenerates the
documentation of each affected project.
"""
