from .adaptive_mesh import CellTree
from .timer import SectionTimer
__all__=['CellTree','SectionTimer']
