"""
Operations Layer

Business logic composed from the database layer. Each module owns one
workflow and its transaction boundaries:

- Matchmaker: joining pairwise and team matches
- LifecycleResolver: leaving, forfeiting and deleting matches
- ResultResolver: result claims and settlement
- FeedSelector: feed visibility policies
- ScoreLedger: win-streak progression
- IntegrityOperations: one-active-match audit and repair
- MatchOperations: facade used by the surrounding application
"""
