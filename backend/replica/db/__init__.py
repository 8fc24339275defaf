"""Domain models and repositories.

``models`` holds the plain dataclasses shared by every layer of the
application, ``features`` the local feature store repositories and
``layer_config`` the persisted layer documents (schema, sync settings and
the serialized change queue).

Example:
    Use in a service or FastAPI dependency:
        >>> from replica.db import layer_config
        >>> repo = layer_config.get_layer_config_repository(settings.layers_dir)
"""
