"""
Flyer Wizard
Product matching, ranking and migration engine for weekly-flyer shopping lists:
- candidates / ranking: two-pass search and deterministic scoring
- store_selection: greedy choice of at most two stores per session
- wizard: session state machine with staleness checks and idempotent completion
- snapshots: append-only audit of offers shown and chosen
"""
