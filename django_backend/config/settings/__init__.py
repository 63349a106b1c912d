"""
Settings package.

``base`` holds the shared configuration; ``docker`` and ``test`` layer
environment specific values on top of it.
"""
