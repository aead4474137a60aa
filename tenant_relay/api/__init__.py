"""HTTP surface shared by the tool server apps."""
