"""
Outbound email package.

Template rendering and delivery live in the Communications Service; this
package only forwards template types and data over HTTP (see client.py).
"""
