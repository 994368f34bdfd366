# Polygon Proxy Package
# Polygon websocket (one upstream)
#    ↓ (collector)
# auth + reconnect, raw frames onto a queue
#    ↓ (api/relay)
# fan-out to every attached subscriber
#
# Polygon REST (snapshot / grouped aggs)
#    ↓ (data)
# normalized, ranked gainers → Flask API

__version__ = "0.1.0"
