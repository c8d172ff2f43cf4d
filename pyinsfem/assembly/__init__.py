from .local_assembler import ElementAssembler, IMEXLinearization, NewtonLinearization
from .global_matrix import BlockMatrix, BlockSystem, MassSchur
__all__=['ElementAssembler','IMEXLinearization','NewtonLinearization','BlockMatrix','BlockSystem','MassSchur']
