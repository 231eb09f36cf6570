"""gridworld: incremental, provider-generated 3D world tiles.

The server side (``gridworld.app``) tracks and generates chunks; the client
side (``gridworld.client``) streams them around a moving viewer.
"""

__version__ = "0.3.0"
