from .vtk import OutputWriter, export_vtk
__all__=['OutputWriter','export_vtk']
