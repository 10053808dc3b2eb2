from .kml import KmlCodec

__all__ = ["KmlCodec"]
