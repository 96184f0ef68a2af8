"""
HTTP routes. The request-to-service mapping lives with the client-facing
controller layer; the backend only exposes websocket routes (see asgi.py).
"""

urlpatterns = []
