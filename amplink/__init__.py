"""Remote processor life cycle, ELF firmware loading, resource tables and RPMsg endpoints."""

__version__ = "0.1.0"

__all__ = ["elf_loader", "errors", "io", "loader", "remoteproc", "rpmsg", "rsc_table"]