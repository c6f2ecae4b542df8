"""Real-time infrastructure — Redis pub/sub ⇄ WebSocket relay.

Learn: Events flow through two channels:
1. Redis SUBSCRIBE → RelayServer.fan_out → every WebSocket client
2. WebSocket client → RelayServer.republish → Redis PUBLISH (same channel)

Because client messages go back through Redis, any number of relay
processes can sit behind a load balancer and still share one broadcast.
"""
