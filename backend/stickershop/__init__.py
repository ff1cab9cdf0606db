"""
Sticker pipeline: photo in, line-art sticker out, printed and shipped.

Customers upload a photo, the service has a hosted model redraw it as line
art, and a paid checkout turns the result into a print partner order.
"""

__version__ = "1.0.0"
