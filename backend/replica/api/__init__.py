"""API router subpackage of the replica service.

Submodules:
    - layers: Endpoints for registering layers, downloading them from the
      remote server, running sync passes and listing pending changes.
    - tiles: Endpoints answering which tiles cover a viewport and which
      local features fall into one tile.

Each module exposes its own APIRouter for composition in the application's
main FastAPI instance.
"""
