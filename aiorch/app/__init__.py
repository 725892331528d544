############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# __init__.py: Application package initialization
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""aiorch Application Package."""

from aiorch import __version__

__all__ = ["__version__"]
