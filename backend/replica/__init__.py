"""Offline replica of remote vector layers.

This package keeps a local copy of NextGIS Web vector layers, lets it be
edited without connectivity and reconciles the edits with the server later.

- Downloads the schema and features of a remote layer in one pass
- Queues local edits and collapses redundant ones before they are pushed
- Pulls remote changes and pushes queued ones, remapping local ids to the
  ids assigned by the server
- Computes the tiles covering a viewport under TMS or OSM numbering

See module docstrings for details on architecture and usage.
"""
