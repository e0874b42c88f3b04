"""Generation Gateway Layer.

Sits between the storytelling app and the remote generative API
(text and image synthesis) with:
  - Usage Quota Tracker (images per minute / requests per day)
  - Content Cache (fingerprint of the full request input → artifact)
  - Concurrency Gate (ceiling on in-flight remote calls)
  - Resilient Executor (deadline + exponential backoff with jitter)
  - Vendor Adapter (Gemini generateContent over httpx)
"""
