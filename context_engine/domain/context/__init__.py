# This module handles context assembly for the automation agent

# +---------------------+     +---------------------+
# |   Execution state   |     |    Investigations   |   (Per step, raw)
# |---------------------|     |---------------------|
# | Steps               |     | Ledger of attempts  |
# | Step executions     |     | Element discoveries |
# | Events + DOM        |     |                     |
# +---------------------+     +---------------------+
#            \                          /
#             \                        /
#              v                      v
#         +------------------------------+
#         |        Working memory        |   (Cross-step, learned)
#         |------------------------------|
#         | Known elements (reliability) |
#         | Variables, page insight      |
#         | Success / failure patterns   |
#         | Investigation preferences    |
#         +------------------------------+
#                        |
#                        v
# +---------------------------------------------+
# |                   Context                   |   (Assembled per target step)
# |---------------------------------------------|
# | Full context: chronological flow + DOMs     |
# | Filtered context: summarized, size-bounded  |
# | Investigation context: what to probe next   |
# +---------------------------------------------+
#                        |
#                        v
#              [decision process / LLM]
