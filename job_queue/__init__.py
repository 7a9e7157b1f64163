"""
Job Queue — transports that carry dispatched envelopes between processes.

- MessageTransport: Redis Streams (production) and in-memory asyncio.Queue (dev/tests)
- DispatchConsumer: worker loop for the primary and dead-letter destinations
- DestinationResolver: ${...} placeholder resolution for queue names
"""
