# Request handlers, one per protocol surface
