"""Traefik Docker HTTP Provider (TDHP).

Watches the containers running on a Docker host, turns their ``traefik.*``
labels into one Traefik dynamic configuration document and serves it over
HTTP for Traefik's HTTP provider to poll:
 - label keys are parsed into a tree per container
 - per-container trees are merged deterministically (lowest container id wins a name)
 - the document is rebuilt on container start/stop and published atomically
"""
