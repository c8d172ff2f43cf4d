from .navier_stokes import NavierStokesSolver
from .execution import SerialExecution, PartitionedExecution
from .time_control import Time
__all__=['NavierStokesSolver','SerialExecution','PartitionedExecution','Time']
