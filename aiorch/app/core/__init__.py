############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# __init__.py: Core orchestration primitives package
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Core orchestration primitives for aiorch."""
