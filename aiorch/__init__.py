############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# __init__.py: Root package initialization and version definition
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""aiorch - AI request orchestration layer and embedding pipeline."""

__version__ = "0.3.0"
