# Context window handling
#
# +---------------------+
# |      History        |   (Persisted, complete, replayable in the UI)
# |---------------------|
# | user / assistant    |
# | tool results        |
# | error notices       |
# +---------------------+
#          |
#          |  duration filter: drop a message once
#          |  (N - 1 - index) >= duration
#          v
# +---------------------+
# |      Context        |   (What the provider sees this round)
# +---------------------+
