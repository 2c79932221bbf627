"""
Chronos Link — a chat relay that makes messages travel like it's 1840 (or
1990, or now).

Every message is tagged with an era. The relay looks up that era's network
physics, holds the message for a latency + jitter delay, then broadcasts it to
everyone on the global timeline, or, on a dial-up packet loss, tells only the
sender that it never arrived.

- Telegraph messages arrive in capitals, seconds late.
- Dial-up messages lag unpredictably and sometimes time out.
- Modern messages are near-instant and carry a (purely cosmetic) secured tag.

Configure with CHRONOS_* environment variables; see config.py.
"""
__all__ = ["client", "config", "eras", "framing", "messages", "physics", "relay", "run_relay"]
