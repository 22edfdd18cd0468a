"""
Backend for a collaborative floor-plan annotation map.

Stores a single project (plan image, georeferencing corners, point attribute
schema, overlay opacity) and its GeoJSON points, and pushes every committed
change to connected WebSocket clients.
"""
