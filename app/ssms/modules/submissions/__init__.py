"""
Submissions module: form submissions filed against a procedure and their approval.

Lifecycle:
- Submitted (initial) -> Approved | Rejected | Recalled (all terminal)
- Exactly one decision per submission; transitions are compare-and-swap on status
- Recipients (To/CC units) are fixed at creation; only their read flag changes later
- Every transition is recorded to the audit trail
"""
