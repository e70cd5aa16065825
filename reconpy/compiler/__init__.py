from reconpy.compiler.closure_converter import (
    ClosureConverter,
    closure_convert,
    compile_function,
    convert_closures,
    create_scoped_function,
)
