# Payload delivery: script encoding and the layered loader pipeline
from shadowgate.server.delivery.pipeline import LayerPipeline as LayerPipeline
from shadowgate.server.delivery.templates import LayerTemplates as LayerTemplates

__all__ = ["LayerPipeline", "LayerTemplates"]
