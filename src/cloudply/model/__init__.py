"""
The MODEL layer contains pure data structures: primitive types, the field
schema, the packed row buffer and the sensor pose.
It has NO knowledge of files or of the PLY grammar.
"""
