"""
Outbound delivery: the durable queue of pending sends and the worker
that drains it through the channel senders.
"""
from job_queue.outbound_queue import OutboundQueue
from job_queue.sender import ContactCooldown, SenderWorker

__all__ = ["OutboundQueue", "SenderWorker", "ContactCooldown"]
