"""
API route modules for the routing service.

This package contains subrouters for:
- Shift stations: assign, start, complete, re-route, buffer moves, redistribution, defects
- Self-service stations: the same station operations without the supervisor endpoints
- Production: pallet creation, returns from reclamation and read models

Routers are included from pallet_routing.api.main (under the /api/v1 prefix).
"""
