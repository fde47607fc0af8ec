"""User-user collaborative filtering for boardgame ratings.

Core idea:
- Pearson similarity between users over the games both rated, shrunk by how
  different their rating counts are (decay modes)
- Predict a rating as the user's mean plus the similarity-weighted,
  mean-centred ratings of the other users who rated that game
- Optionally precompute the user x user similarity table once and look
  weights up instead of recomputing them per query
- Evaluate with RMSE over randomly held-out ratings, averaged across rounds
"""
