"""Security — authorization, field encryption, log masking, rate limiting."""
